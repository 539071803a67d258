"""
Domain errors for the chat backend.

Every error carries a human-readable message, a machine-readable
``error_code`` and optional ``details``. The API layer maps them to HTTP
responses through ``http_status``; services raise them and never build
responses themselves.

    ChatError
    ├── PermissionDeniedError  - not friends, or blocked
    ├── NotFoundError          - unknown message / request / profile
    ├── ValidationError        - malformed input the schemas cannot catch
    ├── TransientStoreError    - store or channel unavailable, retryable
    └── InvalidEventError      - channel payload failed validation
"""
from typing import Any, Dict, Optional


class ChatError(Exception):
    default_error_code: str = "CHAT_ERROR"
    http_status: int = 400
    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "detail": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            data["details"] = self.details
        if self.retryable:
            data["retryable"] = True
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error_code!r}, {self.message!r})"


class PermissionDeniedError(ChatError):
    default_error_code = "PERMISSION_DENIED"
    http_status = 403


class NotFoundError(ChatError):
    default_error_code = "NOT_FOUND"
    http_status = 404


class ValidationError(ChatError):
    default_error_code = "VALIDATION_ERROR"
    http_status = 422


class TransientStoreError(ChatError):
    default_error_code = "STORE_UNAVAILABLE"
    http_status = 503
    retryable = True


class InvalidEventError(ChatError):
    default_error_code = "INVALID_EVENT"
