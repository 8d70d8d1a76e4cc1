"""Exceptions raised along the interpretation pipeline and the catalog proxy."""

from __future__ import annotations


class PaperExtractorError(Exception):
    """Base class for all service errors."""


class ConfigurationError(PaperExtractorError):
    """A required setting (usually a credential) is missing."""


class ValidationError(PaperExtractorError):
    """Bad or disallowed input. Maps to HTTP 400, never retried."""


class SizeLimitExceeded(ValidationError):
    def __init__(self, limit: int, received: int | None = None):
        self.limit = limit
        self.received = received
        if limit >= 1024 * 1024:
            super().__init__(f"PDF file too large (max {limit // (1024 * 1024)}MB)")
        else:
            super().__init__(f"PDF file too large (max {limit} bytes)")


class TransportError(PaperExtractorError):
    """An upstream answered with a non-success status."""


class NetworkError(TransportError):
    """An upstream could not be reached at all (DNS, connect, timeout)."""


class ProviderError(PaperExtractorError):
    """The inference provider rejected a request."""

    action = "Request"

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"{self.action} failed: {status_code} - {body}")


class UploadError(ProviderError):
    action = "Upload"


class AnalysisError(ProviderError):
    action = "Analysis"


class CatalogError(PaperExtractorError):
    """The paper catalog returned an error or an unexpected body (502)."""


class CatalogUnavailable(CatalogError):
    """The paper catalog could not be reached (503)."""
