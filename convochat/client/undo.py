import asyncio
import logging
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from convochat.client.api import ApiRequestError, ChatApiClient, FailureKind
from convochat.client.reconcile import ConversationView

logger = logging.getLogger(__name__)

UNDO_GRACE_SECONDS = 5.0


class DeleteWithUndo:
    """Deferred conversation deletion with an undo window.

    The conversation disappears from ``visible()`` at once, but the store is
    only asked to delete it when the grace window lapses. Undo inside the
    window cancels the deferred call and leaves everything untouched.
    """

    def __init__(self, api: ChatApiClient, grace: float = UNDO_GRACE_SECONDS, view: Optional[ConversationView] = None):
        self.api = api
        self.grace = grace
        self.view = view
        self._tasks: Dict[str, asyncio.Task] = {}
        self._committing: Set[str] = set()
        self.deleted: Set[str] = set()
        self.errors: Dict[str, ApiRequestError] = {}

    @property
    def pending(self) -> FrozenSet[str]:
        return frozenset(self._tasks)

    def delete(self, conversation_id: str) -> None:
        if conversation_id in self._tasks:
            return
        if self.view is not None and self.view.conversation_id == conversation_id:
            self.view.new_chat()
        self.errors.pop(conversation_id, None)
        self._tasks[conversation_id] = asyncio.ensure_future(self._commit_later(conversation_id))
        logger.info("Conversation %s scheduled for deletion in %.1fs", conversation_id, self.grace)

    def undo(self, conversation_id: str) -> bool:
        """Cancel a pending deletion. Too late once the store call has started."""
        if conversation_id in self._committing:
            return False
        task = self._tasks.pop(conversation_id, None)
        if task is None:
            return False
        task.cancel()
        logger.info("Conversation %s restored", conversation_id)
        return True

    async def _commit_later(self, conversation_id: str) -> None:
        await asyncio.sleep(self.grace)
        self._committing.add(conversation_id)
        try:
            await self.api.delete_conversation(conversation_id)
        except ApiRequestError as exc:
            if exc.kind is not FailureKind.NOT_FOUND:
                # Put it back in the list so the user sees it was not deleted.
                logger.warning("Failed to delete conversation %s: %s", conversation_id, exc)
                self.errors[conversation_id] = exc
                return
        finally:
            self._committing.discard(conversation_id)
            self._tasks.pop(conversation_id, None)
        self.deleted.add(conversation_id)

    def is_selectable(self, conversation_id: str) -> bool:
        return conversation_id not in self._tasks and conversation_id not in self.deleted

    def visible(self, conversations: Iterable) -> List:
        return [c for c in conversations if self.is_selectable(c.id)]

    async def flush(self) -> None:
        """Wait for every pending deletion to run to completion."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
