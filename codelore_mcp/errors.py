from __future__ import annotations

from typing import Optional


class CodeloreError(Exception):
    """Base class for all errors raised by the indexing and retrieval pipeline."""


class ScanError(CodeloreError):
    """Raised when walking the configured project roots fails."""


class MetadataExtractionError(CodeloreError):
    """Raised when the model output cannot be parsed, even after the retry."""

    def __init__(self, message: str, *, raw_response: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw_response = raw_response


class VectorStoreWriteError(CodeloreError):
    """Raised when documents could not be added to the vector store."""


class VectorStoreDeleteError(CodeloreError):
    """Raised when documents could not be removed from the vector store."""


class RetrievalError(CodeloreError):
    """Raised when query rewriting or similarity search fails."""


class PathSecurityError(CodeloreError):
    """Raised when a path is outside the allowed roots or is a symbolic link."""
