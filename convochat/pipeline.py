"""Server-side send pipeline.

received -> user-message-resolved -> history-fetched -> completion-attempted
-> completed | llm-failed | cancelled

The user message is the only write made before the provider call. The
assistant reply and the conversation's ``last_message_at`` are written only
after a successful completion.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from convochat.cancel import CancelToken
from convochat.errors import CancelledError, NotFoundError, UpstreamUnavailableError
from convochat.executor import ResilientExecutor
from convochat.models import MessageOut
from convochat.providers import Turn
from convochat.store import MessageStore

logger = logging.getLogger(__name__)

DUPLICATE_WINDOW_SECONDS = 5 * 60


@dataclass
class SendResult:
    message: MessageOut
    reply: MessageOut
    reused: Optional[str] = None


class _ConversationLock:
    """Lock plus the number of sends holding or waiting on it."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class SendPipeline:
    def __init__(
        self,
        store: MessageStore,
        executor: ResilientExecutor,
        duplicate_window: float = DUPLICATE_WINDOW_SECONDS,
        serialize: bool = False,
    ):
        self.store = store
        self.executor = executor
        self.duplicate_window = duplicate_window
        self.serialize = serialize
        self._locks: Dict[str, _ConversationLock] = {}

    @contextlib.asynccontextmanager
    async def _lock_for(self, conversation_id: str):
        if not self.serialize:
            yield
            return
        entry = self._locks.get(conversation_id)
        if entry is None:
            entry = self._locks[conversation_id] = _ConversationLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[conversation_id]

    async def send(
        self,
        conversation_id: str,
        content: str,
        role: str = "user",
        existing_message_id: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> SendResult:
        token = cancel_token or CancelToken()
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError()

        async with self._lock_for(conversation_id):
            return await self._run(conversation_id, content, role, existing_message_id, token)

    async def _resolve_user_message(self, conversation_id, content, role, existing_message_id):
        if existing_message_id:
            existing = await self.store.get_message(existing_message_id)
            if existing is not None and existing.conversation_id == conversation_id:
                logger.info(
                    "Reusing existing user message for LLM error retry conversation=%s message=%s",
                    conversation_id, existing.id,
                )
                return existing, "existing_id"

        duplicate = await self.store.find_recent_duplicate(
            conversation_id, role, content, self.duplicate_window
        )
        if duplicate is not None:
            logger.info(
                "Reusing existing user message found by content conversation=%s message=%s",
                conversation_id, duplicate.id,
            )
            return duplicate, "duplicate_content"

        created = await self.store.create_message(conversation_id, role, content)
        logger.info("User message created conversation=%s message=%s", conversation_id, created.id)
        return created, None

    async def _run(self, conversation_id, content, role, existing_message_id, token) -> SendResult:
        user_message, reused = await self._resolve_user_message(
            conversation_id, content, role, existing_message_id
        )

        history = await self.store.list_history(conversation_id)
        turns = [Turn(role=m.role, content=m.content) for m in history]
        logger.debug("History fetched conversation=%s turns=%s", conversation_id, len(turns))

        try:
            completion = await self.executor.complete(turns, token)
        except CancelledError:
            logger.info("Send cancelled conversation=%s message=%s", conversation_id, user_message.id)
            raise
        except UpstreamUnavailableError as exc:
            raise UpstreamUnavailableError(
                message_id=user_message.id, attempts=exc.attempts
            ) from exc

        token.raise_if_cancelled()
        reply = await self.store.create_message(conversation_id, "assistant", completion.completion)
        await self.store.touch_conversation(conversation_id, reply.created_at)
        logger.info("Assistant message created conversation=%s message=%s", conversation_id, reply.id)
        return SendResult(message=user_message, reply=reply, reused=reused)
