# leadbot/core/exceptions.py
from __future__ import annotations

from typing import Any, Dict, Optional


class BaseAPIException(Exception):
    """Base exception for all API errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "processed": False,
            "code": self.code,
            "error": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


class WebhookParseError(BaseAPIException):
    """Webhook body could not be decoded."""
    def __init__(self, message: str = "Invalid webhook body", **kwargs):
        kwargs.setdefault("code", "invalid_webhook_body")
        super().__init__(message, status_code=400, **kwargs)


class WebhookValidationError(BaseAPIException):
    """Webhook decoded but a required field is missing."""
    def __init__(self, message: str = "Webhook validation failed", **kwargs):
        kwargs.setdefault("code", "invalid_webhook_payload")
        super().__init__(message, status_code=400, **kwargs)


class NotFoundError(BaseAPIException):
    """Resource not found."""
    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(message, status_code=404, **kwargs)


class ConversionDataError(BaseAPIException):
    """Stored conversion lacks the data needed for a follow-up event."""
    def __init__(self, message: str = "Conversion record is incomplete", **kwargs):
        super().__init__(message, status_code=400, **kwargs)


class DatabaseError(BaseAPIException):
    """Database error."""
    def __init__(self, message: str = "Database error", **kwargs):
        super().__init__(message, status_code=500, **kwargs)


class ServiceUnavailableError(BaseAPIException):
    """Service unavailable."""
    def __init__(self, message: str = "Service unavailable", **kwargs):
        super().__init__(message, status_code=503, **kwargs)
