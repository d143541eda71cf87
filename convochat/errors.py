"""Error taxonomy shared by the pipeline, the executor and the HTTP layer."""

from typing import Any, Optional


class ChatError(Exception):
    """Base error that maps onto an HTTP status and a client-safe message."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        super().__init__(message or self.public_message)
        self.details = details


class ValidationError(ChatError):
    status_code = 400
    public_message = "Invalid request"


class InvalidCursorError(ValidationError):
    public_message = "Invalid cursor format"


class NotFoundError(ChatError):
    status_code = 404
    public_message = "Conversation not found"


class CancelledError(ChatError):
    """Client or caller aborted the request. Not an asyncio.CancelledError."""

    status_code = 499
    public_message = "Request cancelled"


class UpstreamUnavailableError(ChatError):
    status_code = 502
    public_message = "LLM service unavailable"

    def __init__(self, message: Optional[str] = None, message_id: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.message_id = message_id
        self.attempts = attempts


class InternalError(ChatError):
    pass


# ---------- Provider boundary ----------

class ProviderError(Exception):
    """Failure reported by a completion provider adapter."""

    retryable = False

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ProviderNetworkError(ProviderError):
    retryable = True


class ProviderTimeoutError(ProviderNetworkError):
    pass


class ProviderServerError(ProviderError):
    retryable = True


class ProviderClientError(ProviderError):
    retryable = False
