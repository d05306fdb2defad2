"""
Exception hierarchy for the document import and question-answering core.

Only client-facing, terminal failures get their own class here.  Provider
(OpenAI / Anthropic) and storage (Redis, filesystem) errors propagate
unwrapped so the caller can decide between retrying and giving up.
"""
from __future__ import annotations

from typing import Any, Optional


class VectorSearchError(Exception):
    """Base exception for all errors raised by the core."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to a serialisable error payload."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "status_code": self.status_code,
                "details": self.details,
            }
        }


class UnsupportedContentTypeError(VectorSearchError):
    """No decoder is registered for the given content type."""

    def __init__(
        self,
        content_type: str,
        supported: Optional[list[str]] = None,
    ) -> None:
        details: dict[str, Any] = {"content_type": content_type}
        if supported:
            details["supported"] = sorted(supported)
        super().__init__(
            message=f"Unsupported content type: {content_type!r}",
            status_code=400,
            code="UNSUPPORTED_CONTENT_TYPE",
            details=details,
        )


class DecodeError(VectorSearchError):
    """The document could not be decoded (corrupt file, no extractable text)."""

    def __init__(
        self,
        message: str = "Document decoding failed",
        content_type: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        error_details = details or {}
        if content_type:
            error_details["content_type"] = content_type
        super().__init__(
            message=message,
            status_code=422,
            code="DECODE_ERROR",
            details=error_details,
        )
