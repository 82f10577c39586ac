"""Text chunking utilities.

This module turns parsed rows into retrieval chunks, choosing the chunk
size from the number of rows in the table.
"""

import bisect
import logging
from dataclasses import dataclass
from typing import List

from langchain_text_splitters import RecursiveCharacterTextSplitter

from tabular_rag.models import (
    UNIT_TYPE_CHUNK,
    UNIT_TYPE_ROW,
    ChunkDraft,
    ChunkMetadata,
    RowRecord,
)

logger = logging.getLogger(__name__)

ROW_SEPARATOR = "\n\n"
SEPARATORS = [ROW_SEPARATOR, "\n", ", "]


@dataclass(frozen=True)
class ChunkingPolicy:
    """Chunking parameters for one dataset size tier.

    Attributes:
        name: Tier label used in logs.
        split: False when every row becomes its own chunk.
        chunk_size: Target chunk size in characters.
        chunk_overlap: Characters shared by adjacent chunks.
    """

    name: str
    split: bool
    chunk_size: int = 0
    chunk_overlap: int = 0


TINY = ChunkingPolicy("tiny", split=False)
SMALL = ChunkingPolicy("small", split=True, chunk_size=2000, chunk_overlap=100)
MEDIUM = ChunkingPolicy("medium", split=True, chunk_size=1500, chunk_overlap=75)
LARGE = ChunkingPolicy("large", split=True, chunk_size=800, chunk_overlap=40)


def select_chunking_policy(row_count: int) -> ChunkingPolicy:
    """Return the chunking tier for a table with ``row_count`` rows."""
    if row_count <= 10:
        return TINY
    if row_count <= 50:
        return SMALL
    if row_count <= 500:
        return MEDIUM
    return LARGE


def chunk_rows(
    rows: List[RowRecord],
    document_id: str | None = None,
    source: str = "",
    headers: List[str] | None = None,
) -> List[ChunkDraft]:
    """Build the ordered chunks for one document.

    Args:
        rows: Parsed rows in file order.
        document_id: Identifier stamped on every chunk, if already known.
        source: Filename recorded in chunk metadata.
        headers: Column headers recorded in chunk metadata.

    Returns:
        Chunks with contiguous ``chunk_index`` values starting at 0.
    """
    headers = list(headers or [])
    policy = select_chunking_policy(len(rows))
    logger.info(
        f"Chunking {len(rows)} rows with {policy.name} policy "
        f"(size={policy.chunk_size}, overlap={policy.chunk_overlap})"
    )

    if not policy.split:
        pieces = [(row.content, row.row_number) for row in rows]
        unit_type = UNIT_TYPE_ROW
    else:
        pieces = _split_rows(rows, policy)
        unit_type = UNIT_TYPE_CHUNK

    drafts = []
    for index, (content, source_row) in enumerate(pieces):
        drafts.append(
            ChunkDraft(
                chunk_index=index,
                content=content,
                metadata=ChunkMetadata(
                    source=source,
                    source_row=source_row,
                    headers=headers,
                    unit_type=unit_type,
                    document_id=document_id,
                    chunk_index=index,
                ),
            )
        )
    logger.info(f"Created {len(drafts)} chunks from {len(rows)} rows")
    return drafts


def _split_rows(
    rows: List[RowRecord], policy: ChunkingPolicy
) -> List[tuple[str, int | None]]:
    # Start offset of every row inside the joined text
    offsets: list[int] = []
    position = 0
    for row in rows:
        offsets.append(position)
        position += len(row.content) + len(ROW_SEPARATOR)

    splitter = RecursiveCharacterTextSplitter(
        chunk_size=policy.chunk_size,
        chunk_overlap=policy.chunk_overlap,
        length_function=len,
        separators=SEPARATORS,
        add_start_index=True,
    )
    full_text = ROW_SEPARATOR.join(row.content for row in rows)
    docs = splitter.create_documents([full_text])

    pieces = []
    for doc in docs:
        start = doc.metadata.get("start_index", -1)
        if start < 0:
            source_row = None
        else:
            source_row = rows[max(bisect.bisect_right(offsets, start) - 1, 0)].row_number
        pieces.append((doc.page_content, source_row))
    return pieces


def assign_document_id(chunks: List[ChunkDraft], document_id: str) -> List[ChunkDraft]:
    """Return copies of ``chunks`` stamped with ``document_id``."""
    return [
        c.model_copy(
            update={"metadata": c.metadata.model_copy(update={"document_id": document_id})}
        )
        for c in chunks
    ]
