"""Retrieval planning.

Chooses how many chunks to fetch for a question from the size of the
documents in scope, then runs the filtered similarity search.
"""

import logging
import math
from typing import List, Optional, Sequence

from tabular_rag.config import Settings
from tabular_rag.errors import ScopeError, StorageError
from tabular_rag.models import RetrievalResult, ScopeStats
from tabular_rag.rag.deadline import CallRunner, Deadline
from tabular_rag.rag.document_store import DocumentStore
from tabular_rag.rag.embeddings import EmbeddingClient

logger = logging.getLogger(__name__)

DEFAULT_RETRIEVAL_K = 50

NO_MATCHING_DOCUMENTS = "No documents found with the specified IDs."
NO_DOCUMENTS = (
    "No CSV file uploaded. Please upload a CSV file first before asking questions."
)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_k(
    row_total: int,
    chunk_total: Optional[int],
    default_k: int = DEFAULT_RETRIEVAL_K,
) -> int:
    """Return the retrieval width for the given scope size.

    Small scopes fetch nearly every chunk so aggregate questions see all
    rows; large scopes grow with the row count up to a cap.

    Args:
        row_total: Rows across the documents in scope.
        chunk_total: Chunks across the documents in scope, or None if unknown.
        default_k: Stand-in for ``chunk_total`` when it is unknown.

    Returns:
        Number of chunks to request.
    """
    chunks = default_k if chunk_total is None else chunk_total
    if row_total <= 10:
        k = max(chunks, 10)
    elif row_total <= 50:
        k = min(max(chunks, 20), 100)
    elif row_total <= 500:
        k = min(row_total, 150)
    else:
        k = min(row_total * 0.3, 200)
    return _round_half_up(k)


class RetrievalPlanner:
    def __init__(
        self,
        settings: Settings,
        store: DocumentStore,
        embedder: EmbeddingClient,
        runner: CallRunner,
    ):
        self.settings = settings
        self.store = store
        self.embedder = embedder
        self.runner = runner

    def resolve_scope(self, scope: Optional[Sequence[str]] = None) -> ScopeStats:
        """Collect the documents and totals a question may search.

        Raises:
            ScopeError: If no documents match the scope, or none exist.
        """
        requested = list(scope or [])
        documents = self.store.get_documents(ids=requested or None)
        if not documents:
            raise ScopeError(NO_MATCHING_DOCUMENTS if requested else NO_DOCUMENTS)

        found = [d.id for d in documents]
        known = set(found)
        missing = [doc_id for doc_id in requested if doc_id not in known]
        if missing:
            logger.warning(f"Ignoring unknown document IDs: {', '.join(missing)}")

        row_total = sum(d.metadata.row_count for d in documents)
        try:
            chunk_total: Optional[int] = self.store.count_chunks(found if requested else None)
        except StorageError as e:
            logger.warning(f"Could not count chunks, using default retrieval: {e}")
            chunk_total = None

        stats = ScopeStats(
            document_ids=found if requested else [],
            filenames=[d.filename for d in documents],
            row_total=row_total,
            chunk_total=chunk_total,
        )
        logger.info(
            f"Scope: {len(documents)} documents ({', '.join(stats.filenames)}), "
            f"{row_total} rows, {chunk_total} chunks"
        )
        return stats

    def retrieve(
        self, question: str, stats: ScopeStats, deadline: Deadline
    ) -> RetrievalResult:
        """Embed the question and fetch the top ``k`` chunks in scope."""
        k = compute_k(
            stats.row_total, stats.chunk_total, self.settings.default_retrieval_k
        )
        logger.info(f"Using retrieval k={k} for {stats.row_total} total rows")

        q_emb: List[float] = self.runner.call(
            "query embedding",
            self.embedder.embed_query,
            question,
            deadline=deadline,
            retries=self.settings.model_retries,
        )
        hits = self.store.similarity_search(
            q_emb, k=k, scope=stats.document_ids or None
        )
        if stats.row_total:
            coverage = len(hits) / stats.row_total * 100
            logger.info(
                f"Retrieved {len(hits)} chunks, coverage {coverage:.1f}% of total rows"
            )
        return RetrievalResult(k=k, hits=hits)
