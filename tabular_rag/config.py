"""Runtime configuration for the tabular RAG service.

Every knob is read from an environment variable; a `.env` file is
loaded by the entry point before `Settings.from_env()` runs.
"""

from dataclasses import dataclass
import os

from tabular_rag.errors import ConfigurationError


@dataclass
class Settings:
    """Service settings.

    Attributes:
        ibm_cloud_api_key: IBM Cloud API key.
        watsonx_region: watsonx.ai region, e.g. `us-south`.
        watsonx_project_id: watsonx.ai project the models run in.
        watsonx_embed_model: Model id used for chunk and query embeddings.
        watsonx_gen_model: Model id used for the gate and for answers.
        embedding_dim: Expected embedding dimension (0 disables the check).
        faiss_index_path: Path to FAISS index file (empty for in-memory).
        faiss_meta_path: Path to the documents/chunks metadata file.
        similarity_threshold: Minimum cosine similarity for a search hit.
        default_retrieval_k: Retrieval width used when chunk counts are unknown.
        temperature: Sampling temperature for answers.
        max_new_tokens: Generation token budget for answers.
        request_timeout_seconds: Overall deadline for one question.
        model_retries: Retries for idempotent model reads.
        max_upload_bytes: Largest accepted upload.
        log_level: Root logging level.
    """

    ibm_cloud_api_key: str
    watsonx_region: str
    watsonx_project_id: str
    watsonx_embed_model: str
    watsonx_gen_model: str
    embedding_dim: int

    faiss_index_path: str
    faiss_meta_path: str
    similarity_threshold: float
    default_retrieval_k: int

    temperature: float
    max_new_tokens: int
    request_timeout_seconds: float
    model_retries: int

    max_upload_bytes: int
    log_level: str

    @staticmethod
    def _get_bool(value: str | None, default: bool = False) -> bool:
        """Interpret an environment flag such as `1`, `true` or `yes`."""
        if value is None:
            return default
        return value.lower() in {"1", "true", "t", "yes", "y"}

    @property
    def persistent(self) -> bool:
        """Whether the document store is backed by files."""
        return bool(self.faiss_index_path and self.faiss_meta_path)

    @property
    def watsonx_url(self) -> str:
        return f"https://{self.watsonx_region}.ml.cloud.ibm.com"

    def validate_credentials(self) -> None:
        """Fail early when the watsonx.ai clients cannot be built.

        Raises:
            ConfigurationError: If the API key or project ID is missing.
        """
        missing = []
        if not self.ibm_cloud_api_key:
            missing.append("IBM_CLOUD_API_KEY")
        if not self.watsonx_project_id:
            missing.append("WATSONX_PROJECT_ID")
        if missing:
            raise ConfigurationError(
                f"Missing watsonx.ai configuration: {', '.join(missing)}"
            )

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, applying defaults."""
        in_memory = cls._get_bool(os.getenv("IN_MEMORY_STORE"), False)
        return cls(
            ibm_cloud_api_key=os.getenv("IBM_CLOUD_API_KEY", ""),
            watsonx_region=os.getenv("WATSONX_REGION", "us-south"),
            watsonx_project_id=os.getenv("WATSONX_PROJECT_ID", ""),
            watsonx_embed_model=os.getenv(
                "WATSONX_EMBED_MODEL",
                "ibm/slate-125m-english-rtrvr-v2",
            ),
            watsonx_gen_model=os.getenv(
                "WATSONX_GEN_MODEL", "ibm/granite-3-8b-instruct"
            ),
            embedding_dim=int(os.getenv("EMBEDDING_DIM", "768")),
            faiss_index_path=""
            if in_memory
            else os.getenv("FAISS_INDEX_PATH", "data/chunks.faiss"),
            faiss_meta_path=""
            if in_memory
            else os.getenv("FAISS_META_PATH", "data/documents.json"),
            similarity_threshold=float(os.getenv("SIMILARITY_THRESHOLD", "0.7")),
            default_retrieval_k=int(os.getenv("DEFAULT_RETRIEVAL_K", "50")),
            temperature=float(os.getenv("TEMPERATURE", "0.2")),
            max_new_tokens=int(os.getenv("MAX_NEW_TOKENS", "1024")),
            request_timeout_seconds=float(
                os.getenv("REQUEST_TIMEOUT_SECONDS", "60")
            ),
            model_retries=int(os.getenv("MODEL_RETRIES", "1")),
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(3 * 1024 * 1024))),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
