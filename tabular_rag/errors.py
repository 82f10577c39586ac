"""Exception types raised by the ingestion and query pipelines."""


class RagError(Exception):
    """Base exception for application errors."""

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class ConfigurationError(RagError):
    """Raised when configuration is invalid or missing."""
    pass


class ParseError(RagError):
    """Raised when an upload is not readable delimited tabular text."""
    pass


class StorageError(RagError):
    """Raised when a document or chunk write or read fails."""
    pass


class EmbeddingError(RagError):
    """Raised when a batch of texts cannot be embedded."""
    pass


class ScopeError(RagError):
    """Raised when a question has no documents to search."""
    pass


class ModelError(RagError):
    """Raised when a language model call fails."""
    pass


class RequestTimeoutError(RagError, TimeoutError):
    """Raised when an external call exceeds the request deadline."""
    pass


class InvalidQuestionError(RagError):
    """Raised when a question is empty."""
    pass
