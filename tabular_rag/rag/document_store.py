"""Document and chunk storage with cosine similarity search.

Documents and chunk rows live in a JSON sidecar; chunk vectors live in a
FAISS inner-product index keyed by integer chunk ids. Both files are
rewritten after every write when persistence is configured.

The two files are replaced one after the other, index first. If the process
dies between the two replacements the store refuses to load; delete both
files and ingest the uploads again to recover.
"""

import json
import logging
import os
import threading
import uuid
from typing import Dict, Iterable, List, Optional, Sequence

import faiss
import numpy as np

from tabular_rag.config import Settings
from tabular_rag.errors import StorageError
from tabular_rag.models import (
    ChunkDraft,
    ChunkRecord,
    DocumentRecord,
    NewDocument,
    ScoredChunk,
)

logger = logging.getLogger(__name__)


class DocumentStore:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.dim = settings.embedding_dim or None
        self.index_path = settings.faiss_index_path
        self.meta_path = settings.faiss_meta_path
        self.persistent = settings.persistent
        self.index: Optional[faiss.IndexIDMap2] = None
        self.documents: Dict[str, DocumentRecord] = {}
        self.chunks: Dict[int, ChunkRecord] = {}
        self._next_id = 0
        # Guards the index and both relations
        self._lock = threading.RLock()
        if self.persistent:
            for path in (self.index_path, self.meta_path):
                directory = os.path.dirname(path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
            self._load()

    @staticmethod
    def _normalize(vecs: np.ndarray) -> np.ndarray:
        norms = np.linalg.norm(vecs, axis=1, keepdims=True) + 1e-12
        return vecs / norms

    def _create_index(self, dim: int) -> None:
        # Inner product search on normalized vectors = cosine similarity
        self.dim = dim
        self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(dim))

    def _load(self) -> None:
        if not os.path.exists(self.meta_path):
            return
        try:
            with open(self.meta_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self.documents = {
                d["id"]: DocumentRecord.model_validate(d)
                for d in data.get("documents", [])
            }
            self.chunks = {
                int(c.pop("faiss_id")): ChunkRecord.model_validate(c)
                for c in data.get("chunks", [])
            }
            self._next_id = int(data.get("next_id", 0))
            if os.path.exists(self.index_path):
                self.index = faiss.read_index(self.index_path)
                self.dim = self.index.d
        except (OSError, ValueError, KeyError, RuntimeError) as e:
            raise StorageError(
                f"Failed to load document store from {self.meta_path}: {e}",
                original_error=e,
            ) from e

        if self.chunks and (self.index is None or self.index.ntotal != len(self.chunks)):
            raise StorageError(
                f"FAISS index ({self.index_path}) is out of sync with {self.meta_path}: "
                f"{0 if self.index is None else self.index.ntotal} vectors for "
                f"{len(self.chunks)} chunks. Delete both files to rebuild."
            )
        logger.info(
            f"Loaded {len(self.documents)} documents and {len(self.chunks)} chunks"
        )

    def _save(self) -> None:
        if not self.persistent:
            return
        payload = {
            "next_id": self._next_id,
            "documents": [d.model_dump(mode="json") for d in self.documents.values()],
            "chunks": [
                {"faiss_id": fid, **c.model_dump(mode="json", exclude={"embedding"})}
                for fid, c in self.chunks.items()
            ],
        }
        tmp_meta = f"{self.meta_path}.tmp"
        with open(tmp_meta, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        if self.index is not None:
            tmp_index = f"{self.index_path}.tmp"
            faiss.write_index(self.index, tmp_index)
            os.replace(tmp_index, self.index_path)
        os.replace(tmp_meta, self.meta_path)

    def put_document(self, document: NewDocument) -> str:
        """Insert a document row and return its generated id.

        Raises:
            StorageError: If the row cannot be written.
        """
        with self._lock:
            record = DocumentRecord(id=str(uuid.uuid4()), **document.model_dump())
            self.documents[record.id] = record
            try:
                self._save()
            except OSError as e:
                del self.documents[record.id]
                raise StorageError(
                    f"Failed to store document: {e}", original_error=e
                ) from e
        logger.info(f"Stored document with ID: {record.id}")
        return record.id

    def put_chunks(
        self,
        document_id: str,
        chunks: Sequence[ChunkDraft],
        embeddings: Sequence[Sequence[float]],
    ) -> int:
        """Insert all chunks of one document with their vectors.

        Either every chunk is stored or none is.

        Args:
            document_id: Owning document.
            chunks: Chunks with indices 0..N-1, in order.
            embeddings: One vector per chunk, same order.

        Returns:
            Number of chunks stored.

        Raises:
            StorageError: If the document is unknown, already has chunks,
                the indices are not contiguous, or the write fails.
        """
        if len(chunks) != len(embeddings):
            raise StorageError(
                f"Failed to insert chunks: {len(chunks)} chunks but {len(embeddings)} embeddings"
            )
        if [c.chunk_index for c in chunks] != list(range(len(chunks))):
            raise StorageError(
                "Failed to insert chunks: chunk_index values must be 0..N-1 in order"
            )
        if not chunks:
            return 0

        try:
            vectors = np.array(embeddings, dtype=np.float32)
        except ValueError as e:
            raise StorageError(
                "Failed to insert chunks: embeddings have uneven dimensions",
                original_error=e,
            ) from e
        if vectors.ndim != 2:
            raise StorageError("Failed to insert chunks: embeddings have uneven dimensions")
        vectors = self._normalize(vectors)

        with self._lock:
            if document_id not in self.documents:
                raise StorageError(
                    f"Failed to insert chunks: unknown document {document_id}"
                )
            if any(c.document_id == document_id for c in self.chunks.values()):
                raise StorageError(
                    f"Failed to insert chunks: document {document_id} already has chunks"
                )

            vec_dim = vectors.shape[1]
            if self.index is None or (self.index.ntotal == 0 and self.index.d != vec_dim):
                self._create_index(vec_dim)
            elif self.index.d != vec_dim:
                raise StorageError(
                    f"FAISS index dimension mismatch: index.d={self.index.d} vs embeddings.d={vec_dim}. "
                    f"Either set EMBEDDING_DIM={self.index.d} and use the same embedding model, or delete the existing "
                    f"store files ({self.index_path}, {self.meta_path}) to rebuild with the new dimension."
                )

            ids = np.arange(self._next_id, self._next_id + len(chunks), dtype=np.int64)
            new_records = {}
            for fid, draft in zip(ids.tolist(), chunks):
                new_records[fid] = ChunkRecord(
                    id=str(uuid.uuid4()),
                    document_id=document_id,
                    content=draft.content,
                    chunk_index=draft.chunk_index,
                    metadata=draft.metadata,
                )
            try:
                self.index.add_with_ids(vectors, ids)
                self.chunks.update(new_records)
                self._next_id += len(chunks)
                self._save()
            except (OSError, RuntimeError) as e:
                self._discard(new_records.keys())
                raise StorageError(
                    f"Failed to insert chunks: {e}", original_error=e
                ) from e
        return len(chunks)

    def _discard(self, faiss_ids: Iterable[int]) -> None:
        ids = list(faiss_ids)
        if not ids:
            return
        if self.index is not None:
            self.index.remove_ids(np.array(ids, dtype=np.int64))
        for fid in ids:
            self.chunks.pop(fid, None)

    def similarity_search(
        self,
        query_embedding: List[float],
        k: int,
        scope: Optional[Sequence[str]] = None,
        similarity_threshold: Optional[float] = None,
    ) -> List[ScoredChunk]:
        """Return up to ``k`` chunks ordered by descending cosine similarity.

        Args:
            query_embedding: Query vector.
            k: Maximum number of hits.
            scope: Document ids to restrict the search to; empty searches all.
            similarity_threshold: Hits must score strictly above this value.

        Returns:
            Scored chunks, best first.
        """
        threshold = (
            self.settings.similarity_threshold
            if similarity_threshold is None
            else similarity_threshold
        )
        allowed = set(scope) if scope else None
        with self._lock:
            if self.index is None or self.index.ntotal == 0 or k <= 0:
                return []
            q = self._normalize(np.array([query_embedding], dtype=np.float32))
            if q.shape[1] != self.index.d:
                raise StorageError(
                    f"Query dimension {q.shape[1]} doesn't match index dimension {self.index.d}"
                )
            # A scoped search ranks everything, then filters
            search_k = self.index.ntotal if allowed else min(k, self.index.ntotal)
            scores, idxs = self.index.search(q, search_k)

            hits: List[ScoredChunk] = []
            for score, fid in zip(scores[0].tolist(), idxs[0].tolist()):
                if fid < 0 or fid not in self.chunks:
                    continue
                if score <= threshold:
                    break
                chunk = self.chunks[fid]
                if allowed is not None and chunk.document_id not in allowed:
                    continue
                hits.append(ScoredChunk(chunk=chunk, similarity=float(score)))
                if len(hits) >= k:
                    break
        return hits

    def get_documents(
        self, ids: Optional[Sequence[str]] = None, limit: Optional[int] = None
    ) -> List[DocumentRecord]:
        """Return documents newest first, optionally restricted to ``ids``."""
        with self._lock:
            # Insertion order breaks ties between equal timestamps
            ordered = list(enumerate(self.documents.values()))
        if ids:
            wanted = set(ids)
            ordered = [(seq, d) for seq, d in ordered if d.id in wanted]
        ordered.sort(key=lambda p: (p[1].uploaded_at, p[0]), reverse=True)
        docs = [d for _, d in ordered]
        return docs[:limit] if limit is not None else docs

    def list_documents(self) -> List[DocumentRecord]:
        return self.get_documents()

    def count_chunks(self, scope: Optional[Sequence[str]] = None) -> int:
        with self._lock:
            if not scope:
                return len(self.chunks)
            allowed = set(scope)
            return sum(1 for c in self.chunks.values() if c.document_id in allowed)

    def get_chunks(self, document_id: str) -> List[ChunkRecord]:
        with self._lock:
            chunks = [c for c in self.chunks.values() if c.document_id == document_id]
        return sorted(chunks, key=lambda c: c.chunk_index)

    def delete_document(self, document_id: str) -> bool:
        """Delete a document and all of its chunks.

        Returns:
            False when no such document exists.
        """
        with self._lock:
            if document_id not in self.documents:
                return False
            doomed = [fid for fid, c in self.chunks.items() if c.document_id == document_id]
            vectors = (
                np.vstack([self.index.reconstruct(fid) for fid in doomed])
                if doomed and self.index is not None
                else None
            )
            previous_documents = dict(self.documents)
            previous_chunks = dict(self.chunks)
            del self.documents[document_id]
            try:
                self._discard(doomed)
                self._save()
            except (OSError, RuntimeError) as e:
                # Restore the in-memory view to match the files on disk
                self.documents = previous_documents
                self.chunks = previous_chunks
                if vectors is not None:
                    ids = np.array(doomed, dtype=np.int64)
                    self.index.remove_ids(ids)
                    self.index.add_with_ids(vectors, ids)
                raise StorageError(
                    f"Failed to delete document: {e}", original_error=e
                ) from e
        logger.info(
            f"Deleted document {document_id} and {len(doomed)} chunks"
        )
        return True
