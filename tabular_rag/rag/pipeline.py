"""RAG pipeline for document ingestion and query processing.

This module provides the IngestionPipeline and QueryPipeline classes
for CSV ingestion and question answering.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Sequence

from tabular_rag.config import Settings
from tabular_rag.errors import (
    InvalidQuestionError,
    ModelError,
    ParseError,
    RagError,
    StorageError,
)
from tabular_rag.models import (
    DocumentMetadata,
    IngestResult,
    NewDocument,
    QueryState,
    RetrievalResult,
)
from tabular_rag.rag.chunker import assign_document_id, chunk_rows, select_chunking_policy
from tabular_rag.rag.deadline import Deadline
from tabular_rag.rag.document_store import DocumentStore
from tabular_rag.rag.embeddings import EmbeddingClient
from tabular_rag.rag.parser import decode_upload, parse_table
from tabular_rag.rag.planner import RetrievalPlanner
from tabular_rag.rag.relevance import OUT_OF_SCOPE_MESSAGE, RelevanceGate
from tabular_rag.rag.synthesizer import AnswerSynthesizer

logger = logging.getLogger(__name__)

CSV_MIME_TYPE = "text/csv"
PROCESSING_FAILED = "Failed to process chat message"


class IngestionPipeline:
    """Pipeline for ingesting and indexing CSV uploads.

    Handles upload checks, parsing, chunking, embedding, and storage of
    the document row and its chunks.
    """

    def __init__(
        self, settings: Settings, store: DocumentStore, embedder: EmbeddingClient
    ) -> None:
        """Initialize ingestion pipeline.

        Args:
            settings: Application settings.
            store: Document store receiving documents and chunks.
            embedder: Embedding gateway.
        """
        self.settings = settings
        self.store = store
        self.embed = embedder

    def validate_upload(self, filename: str, size: int, content_type: str | None) -> str | None:
        """Check an upload before processing.

        Returns:
            A rejection reason, or None when the upload is acceptable.
        """
        if not filename.lower().endswith(".csv") and content_type != CSV_MIME_TYPE:
            return "Only CSV files are allowed"
        if size > self.settings.max_upload_bytes:
            limit_mb = self.settings.max_upload_bytes / (1024 * 1024)
            return f"File size exceeds {limit_mb:g}MB limit"
        return None

    def ingest(
        self,
        raw: bytes,
        filename: str,
        size: int | None = None,
        content_type: str | None = None,
    ) -> IngestResult:
        """Ingest one CSV upload.

        Never raises: every failure is reported in the returned result.

        Args:
            raw: Uploaded file bytes.
            filename: Original filename.
            size: Byte size reported by the uploader; defaults to ``len(raw)``.
            content_type: MIME type hint.

        Returns:
            IngestResult describing the stored document or the failure.
        """
        size = len(raw) if size is None else size
        rejection = self.validate_upload(filename, size, content_type)
        if rejection:
            logger.warning(f"Rejected upload {filename}: {rejection}")
            return IngestResult(success=False, filename=filename, error=rejection)

        document_id: Optional[str] = None
        try:
            logger.info(f"Processing file: {filename} ({size} bytes)")
            table = parse_table(decode_upload(raw))
            if not table.rows:
                raise ParseError("CSV file has no data rows")
            logger.info(f"Parsed {table.row_count} rows from CSV")

            policy = select_chunking_policy(table.row_count)
            logger.info(f"Dataset has {table.row_count} rows, using {policy.name} chunking")
            drafts = chunk_rows(table.rows, source=filename, headers=table.headers)

            # One batch per document; nothing is stored if this fails
            logger.info("Generating embeddings for chunks...")
            embeddings = self.embed.embed_many([d.content for d in drafts])

            document_id = self.store.put_document(
                NewDocument(
                    filename=filename,
                    file_size=size,
                    mime_type=content_type or CSV_MIME_TYPE,
                    content=table.canonical_text,
                    metadata=DocumentMetadata(
                        row_count=table.row_count,
                        headers=table.headers,
                    ),
                )
            )
            drafts = assign_document_id(drafts, document_id)
            try:
                stored = self.store.put_chunks(document_id, drafts, embeddings)
            except StorageError:
                logger.warning(
                    f"Document {document_id} was stored but its chunks were not; "
                    "the document row is left in place"
                )
                raise
        except RagError as e:
            logger.error(f"Error processing file {filename}: {e}", exc_info=True)
            return IngestResult(
                success=False,
                filename=filename,
                document_id=document_id,
                error=str(e),
            )
        except Exception as e:
            logger.exception(f"Unexpected error processing file {filename}")
            return IngestResult(
                success=False,
                filename=filename,
                document_id=document_id,
                error=str(e) or "Unknown error",
            )

        logger.info(
            f"Successfully inserted {stored} chunks from {table.row_count} rows of {filename}"
        )
        return IngestResult(
            success=True,
            filename=filename,
            chunks_stored=stored,
            document_id=document_id,
        )


@dataclass
class QueryOutcome:
    """Final state of one run of the query pipeline."""

    state: QueryState
    answer: Optional[str] = None
    retrieval: Optional[RetrievalResult] = None
    error: Optional[RagError] = None


@dataclass
class _QueryRun:
    question: str
    scope: Sequence[str]
    deadline: Deadline
    answer: Optional[str] = None
    retrieval: Optional[RetrievalResult] = None
    error: Optional[RagError] = None
    history: list = field(default_factory=list)


TERMINAL_STATES = {QueryState.ANSWERED, QueryState.REFUSED, QueryState.FAILED}


class QueryPipeline:
    """Pipeline for answering questions about ingested tables.

    Runs as a small state machine::

        GATED -> RETRIEVING -> ANSWERED
        GATED -> REFUSED
        GATED | RETRIEVING -> FAILED
    """

    def __init__(
        self,
        settings: Settings,
        gate: RelevanceGate,
        planner: RetrievalPlanner,
        synthesizer: AnswerSynthesizer,
    ) -> None:
        self.settings = settings
        self.gate = gate
        self.planner = planner
        self.synthesizer = synthesizer
        self._handlers: Dict[QueryState, Callable[[_QueryRun], QueryState]] = {
            QueryState.GATED: self._gate,
            QueryState.RETRIEVING: self._retrieve_and_answer,
        }

    def _gate(self, run: _QueryRun) -> QueryState:
        if self.gate.is_in_domain(run.question, run.deadline):
            return QueryState.RETRIEVING
        run.answer = OUT_OF_SCOPE_MESSAGE
        return QueryState.REFUSED

    def _retrieve_and_answer(self, run: _QueryRun) -> QueryState:
        logger.info(
            f"Querying {'specific' if run.scope else 'all'} documents: {run.question}"
        )
        stats = self.planner.resolve_scope(run.scope)
        run.retrieval = self.planner.retrieve(run.question, stats, run.deadline)
        run.answer = self.synthesizer.synthesize(
            run.question,
            run.retrieval.hits,
            stats.filenames,
            stats.row_total,
            run.deadline,
        )
        run.retrieval.answer = run.answer
        return QueryState.ANSWERED

    def run(self, question: str, scope: Optional[Sequence[str]] = None) -> QueryOutcome:
        """Drive one question through the pipeline states.

        Raises:
            InvalidQuestionError: If the question is blank.
        """
        if not isinstance(question, str) or not question.strip():
            raise InvalidQuestionError("Message cannot be empty")

        run = _QueryRun(
            question=question,
            scope=list(scope or []),
            deadline=Deadline(self.settings.request_timeout_seconds),
        )
        state = QueryState.GATED
        while state not in TERMINAL_STATES:
            run.history.append(state)
            try:
                state = self._handlers[state](run)
            except ModelError as e:
                logger.error(f"Model call failed in state {state.value}: {e}")
                run.error = ModelError(PROCESSING_FAILED, original_error=e)
                state = QueryState.FAILED
            except RagError as e:
                logger.error(f"Query failed in state {state.value}: {e}")
                run.error = e
                state = QueryState.FAILED
        run.history.append(state)
        logger.info(f"Query finished: {' -> '.join(s.value for s in run.history)}")
        return QueryOutcome(
            state=state, answer=run.answer, retrieval=run.retrieval, error=run.error
        )

    def answer(self, question: str, scope: Optional[Sequence[str]] = None) -> str:
        """Answer a question, raising the typed error of a failed run."""
        outcome = self.run(question, scope)
        if outcome.state is QueryState.FAILED:
            raise outcome.error
        return outcome.answer
