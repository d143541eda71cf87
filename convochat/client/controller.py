import asyncio
import logging
from typing import Optional

from convochat.client.api import ApiRequestError, ChatApiClient, FailureKind
from convochat.client.reconcile import ClientMessage, ConversationView
from convochat.models import SendMessageResponse

logger = logging.getLogger(__name__)

FAILURE_REASONS = {
    FailureKind.CANCELLED: "Message was cancelled",
    FailureKind.TIMEOUT: "Request timed out. Please try again.",
    FailureKind.UPSTREAM: "LLM service unavailable. Please try again.",
}
GENERIC_REASON = "Failed to send message. Please try again."


def failure_reason(kind: FailureKind) -> str:
    return FAILURE_REASONS.get(kind, GENERIC_REASON)


class SendController:
    """Owns the single in-flight send of a conversation view.

    Failures never propagate to the caller: they are recorded as annotations
    on the provisional message so the transcript can offer a retry.
    """

    def __init__(self, api: ChatApiClient, view: ConversationView):
        self.api = api
        self.view = view
        self._task: Optional[asyncio.Task] = None
        self.last_failure: Optional[ApiRequestError] = None
        self._opening = False

    @property
    def is_sending(self) -> bool:
        return self._opening or self._in_flight()

    def _in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_disabled(self) -> bool:
        return self.is_sending

    def cancel(self) -> bool:
        """Abort the in-flight send. Input is re-enabled immediately."""
        if not self._in_flight():
            return False
        task, self._task = self._task, None
        task.cancel()
        return True

    async def submit(self, content: str) -> Optional[SendMessageResponse]:
        if self.is_disabled:
            logger.debug("Send ignored: another send is in flight")
            return None
        if self.view.conversation_id is None and not await self._open_conversation(content):
            return None
        provisional = self.view.add_provisional(content)
        return await self._send(provisional, existing_message_id=None)

    async def _open_conversation(self, content: str) -> bool:
        self._opening = True
        try:
            conversation = await self.api.create_conversation()
        except ApiRequestError as exc:
            logger.warning("Could not start a conversation: %s", exc)
            self.last_failure = exc
            provisional = self.view.add_provisional(content)
            self.view.mark_failed(provisional.id, failure_reason(exc.kind))
            return False
        finally:
            self._opening = False
        self.view.select(conversation.id)
        return True

    async def retry(self, message_id: str) -> Optional[SendMessageResponse]:
        """Resend a failed message, reusing its persisted id when the server gave one."""
        if self.is_disabled:
            return None
        provisional = self.view.find_provisional(message_id)
        if provisional is None:
            logger.debug("Retry ignored: no failed message %s", message_id)
            return None
        if self.view.conversation_id is None:
            # Never reached the server; start over once a conversation exists.
            self.view.discard_provisional(provisional.id)
            return await self.submit(provisional.content)
        note = self.view.failure_for(provisional.id)
        saved_id = note.failed_user_message_id if note else None
        # A persisted turn stays on screen as the same entry; only its error clears.
        self.view.clear_failure(provisional.id)
        return await self._send(provisional, existing_message_id=saved_id)

    async def _send(self, provisional: ClientMessage, existing_message_id: Optional[str]) -> Optional[SendMessageResponse]:
        conversation_id = self.view.conversation_id
        task = asyncio.ensure_future(
            self.api.send_message(conversation_id, provisional.content, existing_message_id)
        )
        self._task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._task is task:
                self._task = None

        if task.cancelled():
            logger.info("Send cancelled by user conversation=%s", conversation_id)
            self._mark_failed(conversation_id, provisional, FailureKind.CANCELLED, existing_message_id)
            return None

        exc = task.exception()
        if exc is None:
            self.last_failure = None
            if self.view.conversation_id == conversation_id:
                try:
                    await self.view.refresh()
                except ApiRequestError as refresh_error:
                    logger.warning("Refetch after send failed: %s", refresh_error)
            return task.result()
        if not isinstance(exc, ApiRequestError):
            raise exc

        if exc.kind is not FailureKind.CANCELLED:
            self.last_failure = exc
        saved_id = exc.message_id or existing_message_id
        logger.info("Send failed conversation=%s kind=%s", conversation_id, exc.kind.value)
        self._mark_failed(conversation_id, provisional, exc.kind, saved_id)
        return None

    def _mark_failed(self, conversation_id, provisional, kind, saved_id):
        if self.view.conversation_id != conversation_id:
            return
        self.view.mark_failed(provisional.id, failure_reason(kind), saved_id)
