"""Async HTTP client for the convochat API with typed failures."""

import enum
import logging
from typing import Any, List, Optional

import httpx

from convochat.models import (
    ConversationListItem,
    ConversationOut,
    ConversationWithMessages,
    SendMessageResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8000/api"
DEFAULT_TIMEOUT = 12.0


class FailureKind(str, enum.Enum):
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    UPSTREAM = "upstream"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    GENERIC = "generic"


class ApiRequestError(Exception):
    """Failed API call, classified so the UI never shows raw error text."""

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        status_code: Optional[int] = None,
        message_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.message_id = message_id

    @property
    def is_llm_error(self) -> bool:
        return self.kind is FailureKind.UPSTREAM


def _error_from_response(response: httpx.Response) -> ApiRequestError:
    status = response.status_code
    try:
        data = response.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    message = data.get("error") or f"HTTP {status}: {response.reason_phrase}"

    if status == 499:
        return ApiRequestError(FailureKind.CANCELLED, "Request cancelled", status)
    if status == 502:
        # The user message was saved; only the LLM call needs retrying.
        return ApiRequestError(FailureKind.UPSTREAM, message, status, data.get("messageId"))
    if status == 404:
        return ApiRequestError(FailureKind.NOT_FOUND, message, status)
    if status == 400:
        return ApiRequestError(FailureKind.VALIDATION, message, status)
    return ApiRequestError(FailureKind.GENERIC, message, status)


class ChatApiClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ApiRequestError(
                FailureKind.TIMEOUT, "Request timeout - the server took too long to respond"
            ) from exc
        except httpx.TransportError as exc:
            raise ApiRequestError(
                FailureKind.NETWORK, "Network error - unable to reach the server"
            ) from exc
        if response.is_error:
            raise _error_from_response(response)
        return response

    # ---------- Conversations ----------

    async def list_conversations(self) -> List[ConversationListItem]:
        response = await self._request("GET", "/conversations")
        return [ConversationListItem.model_validate(item) for item in response.json()]

    async def create_conversation(self, title: Optional[str] = None) -> ConversationOut:
        body = {"title": title} if title else {}
        response = await self._request("POST", "/conversations", json=body)
        return ConversationOut.model_validate(response.json())

    async def get_conversation(
        self,
        conversation_id: str,
        cursor: Optional[str] = None,
        limit: int = 20,
        direction: str = "older",
    ) -> ConversationWithMessages:
        params = {"limit": str(limit), "direction": direction}
        if cursor:
            params["cursor"] = cursor
        response = await self._request("GET", f"/conversations/{conversation_id}", params=params)
        return ConversationWithMessages.model_validate(response.json())

    async def update_conversation(self, conversation_id: str, title: str) -> ConversationOut:
        response = await self._request("PATCH", f"/conversations/{conversation_id}", json={"title": title})
        return ConversationOut.model_validate(response.json())

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/conversations/{conversation_id}")

    # ---------- Messages ----------

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        existing_message_id: Optional[str] = None,
    ) -> SendMessageResponse:
        """Send a user turn. Cancel the awaiting task to abort the request."""
        body = {"content": content}
        if existing_message_id:
            body["existingMessageId"] = existing_message_id
        response = await self._request("POST", f"/conversations/{conversation_id}/messages", json=body)
        return SendMessageResponse.model_validate(response.json())
