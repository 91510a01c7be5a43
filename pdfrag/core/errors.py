"""Exception types raised by pdfrag services."""


class PdfRagError(Exception):
    """Base class for pdfrag errors."""


class InputValidationError(PdfRagError, ValueError):
    """Raised when caller input is malformed. Never retried."""


class OwnershipError(PdfRagError):
    """Raised when a document does not belong to the requesting user."""

    def __init__(self, document_id: str, user_id: str):
        super().__init__(f"Document {document_id} not found for user {user_id}")
        self.document_id = document_id
        self.user_id = user_id


class ExternalServiceError(PdfRagError):
    """Raised when an external call (embedding, vector DB, LLM) fails."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class SearchUnavailableError(ExternalServiceError):
    """Raised when vector search and its fallback both fail."""

    def __init__(self, message: str):
        super().__init__(message, operation="vector_search", recoverable=False)


class PageExtractionError(PdfRagError):
    """Raised when a PDF cannot be opened at all."""
