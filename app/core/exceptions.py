"""
Custom exception classes for unified error handling.
"""

from fastapi import HTTPException, status


class AppBaseError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message: str, detail: str | None = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class IngestionError(AppBaseError):
    """Base for every failure raised by the knowledge ingestion pipeline."""


class DocumentParseError(IngestionError):
    """Raised when a document cannot be converted to text (malformed or unsupported).

    Not retryable: the input itself is the problem, not the transport.
    """
    def __init__(self, message: str, mime: str | None = None):
        super().__init__(
            message=message,
            detail=f"Could not extract text from '{mime}' content." if mime else None,
        )
        self.mime = mime


class EmptyDocumentError(IngestionError):
    """Raised when parsing succeeded but produced no text to index."""
    def __init__(self, source_id: str):
        super().__init__(
            message=f"No text could be extracted from knowledge source {source_id}",
            detail="The document is empty after parsing.",
        )


class IntegrationError(IngestionError):
    """Raised when an external service breaks its contract (counts, dimensions, sizes)."""


class EmbeddingIntegrityError(IntegrationError):
    """Raised when the embedding provider returns the wrong number or shape of vectors."""


class VectorMetadataTooLargeError(IntegrationError):
    """Raised when vector metadata would exceed the index's per-vector limit."""
    def __init__(self, size: int, limit: int):
        super().__init__(
            message=f"Metadata size {size} bytes exceeds vector index limit of {limit} bytes",
        )
        self.size = size
        self.limit = limit


class SourceNotFoundError(IngestionError):
    """Raised when a knowledge source record does not exist."""
    def __init__(self, source_id: str):
        super().__init__(
            message=f"Knowledge source {source_id} not found",
        )
        self.source_id = source_id


class SourceFileMissingError(IngestionError):
    """Raised when a knowledge source has no stored file to ingest."""
    def __init__(self, source_id: str, reason: str):
        super().__init__(
            message=f"{reason} for knowledge source {source_id}",
            detail="Upload the document again.",
        )
        self.source_id = source_id


class SourceLockedError(IngestionError):
    """Raised when another ingestion run already holds the source's advisory lock."""
    def __init__(self, source_id: str):
        super().__init__(
            message=f"Knowledge source {source_id} is already being ingested",
            detail="Wait for the running ingestion to finish, then retry.",
        )
        self.source_id = source_id


class InvalidStatusTransitionError(IngestionError):
    """Raised when a status change is not allowed by the source state machine."""
    def __init__(self, current: str, target: str):
        super().__init__(
            message=f"Invalid knowledge source transition: {current} -> {target}",
        )
        self.current = current
        self.target = target


class IngestionCancelledError(IngestionError):
    """Raised the moment an abort signal is observed. Never retried."""
    def __init__(self, reason: str | None = None):
        super().__init__(
            message=f"Operation cancelled: {reason}" if reason else "Operation cancelled",
        )
        self.reason = reason


# ── Utility: convert to HTTPException ────────────────────

def app_error_to_http(error: AppBaseError, status_code: int | None = None) -> HTTPException:
    """Convert an AppBaseError to an HTTPException with consistent JSON body."""
    if status_code is None:
        status_code = _default_status_code(error)
    return HTTPException(
        status_code=status_code,
        detail={
            "error": error.message,
            "detail": error.detail,
            "type": type(error).__name__,
        },
    )


def _default_status_code(error: AppBaseError) -> int:
    if isinstance(error, (SourceNotFoundError, SourceFileMissingError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, (SourceLockedError, InvalidStatusTransitionError)):
        return status.HTTP_409_CONFLICT
    if isinstance(error, (DocumentParseError, EmptyDocumentError)):
        return 422
    if isinstance(error, IngestionCancelledError):
        return 499
    return status.HTTP_500_INTERNAL_SERVER_ERROR
