import logging
from typing import Any, Sequence

from ibm_watsonx_ai import Credentials
from ibm_watsonx_ai.foundation_models import Embeddings as WXEmbeddings

from tabular_rag.config import Settings
from tabular_rag.errors import EmbeddingError, RagError

logger = logging.getLogger(__name__)

_VECTOR_KEYS = ("embedding", "vector", "values")


class EmbeddingClient:
    """Embedding gateway backed by watsonx.ai.

    The underlying client is created on first use and reused afterwards.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._client: WXEmbeddings | None = None

    @property
    def client(self) -> WXEmbeddings:
        if self._client is None:
            self.settings.validate_credentials()
            credentials = Credentials(
                api_key=self.settings.ibm_cloud_api_key,
                url=self.settings.watsonx_url,
            )
            self._client = WXEmbeddings(
                model_id=self.settings.watsonx_embed_model,
                project_id=self.settings.watsonx_project_id,
                credentials=credentials,
            )
        return self._client

    def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed a batch of texts, one vector per text in input order.

        Raises:
            EmbeddingError: If any text cannot be embedded.
        """
        if not texts:
            return []
        try:
            result = self.client.embed_documents(list(texts))
        except RagError:
            raise
        except Exception as e:
            raise EmbeddingError(
                f"Embedding request failed for {len(texts)} texts: {e}",
                original_error=e,
            ) from e

        vectors = _vectors_from_response(result)
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding count ({len(vectors)}) doesn't match input count ({len(texts)})"
            )
        for vec in vectors:
            self._check_dim(vec)
        return vectors

    def embed_query(self, text: str) -> list[float]:
        try:
            result = self.client.embed_query(text)
        except RagError:
            raise
        except Exception as e:
            raise EmbeddingError(
                f"Query embedding request failed: {e}", original_error=e
            ) from e

        data = result.get_result() if hasattr(result, "get_result") else result
        # A bare vector
        if isinstance(data, list) and data and isinstance(data[0], (int, float)):
            vec = [float(v) for v in data]
        else:
            vectors = _vectors_from_response(result)
            if not vectors:
                raise EmbeddingError("Empty query embedding response from watsonx.ai")
            vec = vectors[0]
        self._check_dim(vec)
        return vec

    def _check_dim(self, vec: list[float]) -> None:
        expected = self.settings.embedding_dim
        if expected and len(vec) != expected:
            raise EmbeddingError(
                f"Embedding dimension mismatch: got {len(vec)}, expected {expected}. "
                f"Set EMBEDDING_DIM to match {self.settings.watsonx_embed_model}."
            )


def _vectors_from_response(result: Any) -> list[list[float]]:
    data = result.get_result() if hasattr(result, "get_result") else result
    # Supported shapes
    # 1) {"results": [{"embedding"|"vector"|"values": [...]}, ...]}
    if isinstance(data, dict) and isinstance(data.get("results"), list):
        out = []
        for item in data["results"]:
            if isinstance(item, dict):
                for key in _VECTOR_KEYS:
                    if key in item:
                        out.append(item[key])
                        break
        if out:
            return out
    # 2) {"embeddings": [[...], ...]} or {"embedding": [...]}
    if isinstance(data, dict):
        if data.get("embeddings"):
            return data["embeddings"]
        if data.get("embedding"):
            return [data["embedding"]]
    # 3) direct list of vectors
    if isinstance(data, list) and data and isinstance(data[0], list):
        return data
    # 4) attribute style
    if hasattr(result, "embeddings"):
        return result.embeddings
    raise EmbeddingError(
        f"Unexpected embeddings response format from watsonx.ai: {type(data)} "
        f"keys={list(data.keys()) if isinstance(data, dict) else 'n/a'}"
    )
