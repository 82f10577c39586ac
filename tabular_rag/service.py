"""Service layer tying the store, model clients and pipelines together."""

import logging
from typing import List, Optional, Sequence

from tabular_rag.config import Settings
from tabular_rag.errors import StorageError
from tabular_rag.models import DeleteResult, DocumentSummary, IngestResult
from tabular_rag.rag.deadline import CallRunner
from tabular_rag.rag.document_store import DocumentStore
from tabular_rag.rag.embeddings import EmbeddingClient
from tabular_rag.rag.generator import GeneratorClient
from tabular_rag.rag.pipeline import IngestionPipeline, QueryOutcome, QueryPipeline
from tabular_rag.rag.planner import RetrievalPlanner
from tabular_rag.rag.relevance import RelevanceGate
from tabular_rag.rag.synthesizer import AnswerSynthesizer

logger = logging.getLogger(__name__)


class RagService:
    """Operations exposed to callers: upload, ask, list and delete."""

    def __init__(
        self,
        settings: Settings,
        store: DocumentStore,
        embedder: EmbeddingClient,
        generator: GeneratorClient,
        runner: Optional[CallRunner] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.embedder = embedder
        self.generator = generator
        self.runner = runner or CallRunner()

        retries = settings.model_retries
        self.ingestion = IngestionPipeline(settings, store, embedder)
        self.query = QueryPipeline(
            settings,
            gate=RelevanceGate(generator, self.runner, retries=retries),
            planner=RetrievalPlanner(settings, store, embedder, self.runner),
            synthesizer=AnswerSynthesizer(generator, self.runner, retries=retries),
        )

    def ingest(
        self,
        raw: bytes,
        filename: str,
        size: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> IngestResult:
        return self.ingestion.ingest(raw, filename, size, content_type)

    def ask(self, question: str, scope: Optional[Sequence[str]] = None) -> str:
        """Answer a question, optionally restricted to some documents.

        Raises:
            InvalidQuestionError: If the question is blank.
            ScopeError: If no documents are available for the question.
            ModelError: If a model call fails.
            RequestTimeoutError: If the request deadline passes.
        """
        return self.query.answer(question, scope)

    def run_query(
        self, question: str, scope: Optional[Sequence[str]] = None
    ) -> QueryOutcome:
        return self.query.run(question, scope)

    def list_documents(self) -> List[DocumentSummary]:
        return [
            DocumentSummary(
                id=doc.id,
                filename=doc.filename,
                size=doc.file_size,
                uploaded_at=doc.uploaded_at,
                metadata=doc.metadata,
            )
            for doc in self.store.list_documents()
        ]

    def delete_document(self, document_id: str) -> DeleteResult:
        try:
            deleted = self.store.delete_document(document_id)
        except StorageError as e:
            logger.error(f"Error deleting document {document_id}: {e}")
            return DeleteResult(success=False)
        if not deleted:
            logger.warning(f"Document {document_id} not found")
        return DeleteResult(success=deleted)

    def close(self) -> None:
        self.runner.close()


def build_service(
    settings: Settings,
    store: Optional[DocumentStore] = None,
    embedder: Optional[EmbeddingClient] = None,
    generator: Optional[GeneratorClient] = None,
) -> RagService:
    """Build a service from settings, reusing any components passed in."""
    return RagService(
        settings,
        store=store or DocumentStore(settings),
        embedder=embedder or EmbeddingClient(settings),
        generator=generator or GeneratorClient(settings),
    )
