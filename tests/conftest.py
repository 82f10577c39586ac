"""Shared fixtures for the tabular RAG tests.

Model clients are replaced with deterministic fakes so no test touches
the network.
"""

import math
import re
from typing import List, Optional

import pytest

from tabular_rag.config import Settings
from tabular_rag.errors import EmbeddingError
from tabular_rag.rag.document_store import DocumentStore
from tabular_rag.service import RagService

_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


def make_settings(**overrides) -> Settings:
    """Settings for an in-memory store with every hit above threshold."""
    values = dict(
        ibm_cloud_api_key="test-key",
        watsonx_region="us-south",
        watsonx_project_id="test-project",
        watsonx_embed_model="test/embed",
        watsonx_gen_model="test/gen",
        embedding_dim=0,
        faiss_index_path="",
        faiss_meta_path="",
        similarity_threshold=-1.0,
        default_retrieval_k=50,
        temperature=0.2,
        max_new_tokens=256,
        request_timeout_seconds=5.0,
        model_retries=0,
        max_upload_bytes=3 * 1024 * 1024,
        log_level="DEBUG",
    )
    values.update(overrides)
    return Settings(**values)


def text_vector(text: str) -> List[float]:
    """Character histogram over letters and digits, plus a bias term."""
    counts = [0.0] * (len(_ALPHABET) + 1)
    for ch in re.sub(r"[^a-z0-9]", "", text.lower()):
        counts[_ALPHABET.index(ch)] += 1.0
    counts[-1] = 1.0
    norm = math.sqrt(sum(c * c for c in counts))
    return [c / norm for c in counts]


class FakeEmbedder:
    """Embedding capability returning character histograms."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.batches: List[List[str]] = []
        self.queries: List[str] = []

    def embed_many(self, texts):
        self.batches.append(list(texts))
        if self.fail:
            raise EmbeddingError("embedding service unavailable")
        return [text_vector(t) for t in texts]

    def embed_query(self, text):
        self.queries.append(text)
        if self.fail:
            raise EmbeddingError("embedding service unavailable")
        return text_vector(text)


class FakeGenerator:
    """Completion capability with a scripted gate verdict and answer."""

    def __init__(self, verdict: str = "YES", answer: str = "There are 5 rows."):
        self.verdict = verdict
        self.answer = answer
        self.prompts: List[str] = []
        self.error: Optional[Exception] = None

    def complete(self, prompt, temperature=None, max_new_tokens=None):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if prompt.startswith("You are a filter"):
            return self.verdict
        return self.answer


PEOPLE_CSV = (
    b"name,city\n"
    b"Alice,Paris\n"
    b"Bob,\n"
    b"Carol,Rome\n"
    b"Dan,Oslo\n"
    b"Eve,Lima\n"
)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store(settings) -> DocumentStore:
    return DocumentStore(settings)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def service(settings, store, embedder, generator):
    svc = RagService(settings, store, embedder, generator)
    yield svc
    svc.close()


@pytest.fixture
def people_csv() -> bytes:
    return PEOPLE_CSV
