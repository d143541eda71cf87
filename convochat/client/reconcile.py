"""Client-side transcript reconciliation.

The displayed message list is always recomputed from three inputs:
confirmed server messages, provisional (optimistic) messages, and failure
annotations. Nothing here mutates a server-confirmed message in place.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import uuid4

from convochat.client.api import ChatApiClient
from convochat.models import ConversationOut, MessageOut

logger = logging.getLogger(__name__)

PROVISIONAL_PREFIX = "temp-"


def is_provisional_id(message_id: str) -> bool:
    return message_id.startswith(PROVISIONAL_PREFIX)


@dataclass(frozen=True)
class ClientMessage:
    id: str
    role: str
    content: str
    created_at: float
    provisional: bool = False
    is_error: bool = False
    error_message: Optional[str] = None
    failed_user_message_id: Optional[str] = None

    @classmethod
    def from_server(cls, message: MessageOut) -> "ClientMessage":
        return cls(
            id=message.id,
            role=message.role,
            content=message.content,
            created_at=message.created_at,
        )


@dataclass(frozen=True)
class FailureAnnotation:
    error_message: str
    failed_user_message_id: Optional[str] = None


@dataclass(frozen=True)
class TranscriptState:
    confirmed: Tuple[MessageOut, ...] = ()
    provisionals: Tuple[ClientMessage, ...] = ()
    annotations: Mapping[str, FailureAnnotation] = field(default_factory=dict)


def _sort_key(message: ClientMessage):
    return (message.created_at, message.id)


def _annotate(message: ClientMessage, note: FailureAnnotation) -> ClientMessage:
    return replace(
        message,
        is_error=True,
        error_message=note.error_message,
        failed_user_message_id=note.failed_user_message_id,
    )


def render_transcript(state: TranscriptState) -> List[ClientMessage]:
    """Chronological, duplicate-free display list for one conversation."""
    by_id: Dict[str, ClientMessage] = {}
    for m in state.confirmed:
        by_id.setdefault(m.id, ClientMessage.from_server(m))

    for p in state.provisionals:
        note = state.annotations.get(p.id)
        saved_id = note.failed_user_message_id if note else None
        if saved_id and saved_id in by_id:
            # The server already holds this turn; decorate it instead of duplicating.
            by_id[saved_id] = _annotate(by_id[saved_id], note)
            continue
        shown = p
        if note is not None:
            shown = _annotate(replace(p, id=saved_id or p.id), note)
        by_id.setdefault(shown.id, shown)

    return sorted(by_id.values(), key=_sort_key)


class ScrollTracker:
    """Decides when the view should jump to the newest message.

    Only an append (newest id changed) or the first render scrolls. A
    backward page load changes only the oldest id and never scrolls.
    """

    def __init__(self):
        self._last_id: Optional[str] = None

    def update(self, messages: List[ClientMessage], loading_older: bool = False) -> bool:
        if not messages:
            return False
        last_id = messages[-1].id
        first_render = self._last_id is None
        should_scroll = not loading_older and (first_render or last_id != self._last_id)
        self._last_id = last_id
        return should_scroll


class ConversationView:
    """Paginated, reconciled view of the active conversation."""

    def __init__(self, api: ChatApiClient, page_size: int = 20):
        self.api = api
        self.page_size = page_size
        self._reset(None)

    def _reset(self, conversation_id: Optional[str]) -> None:
        self.conversation_id = conversation_id
        self.conversation: Optional[ConversationOut] = None
        self._confirmed: Dict[str, MessageOut] = {}
        self._provisionals: Tuple[ClientMessage, ...] = ()
        self._annotations: Dict[str, FailureAnnotation] = {}
        self.older_cursor: Optional[str] = None
        self.has_more = False
        self.is_loading_older = False
        self._oldest = None

    # ---------- Selection ----------

    def select(self, conversation_id: str) -> None:
        if conversation_id != self.conversation_id:
            # Pages from another conversation must never leak into this one.
            self._reset(conversation_id)

    def new_chat(self) -> None:
        self._reset(None)

    # ---------- Server data ----------

    def _absorb(self, items: Iterable[MessageOut], next_cursor: Optional[str], has_more: bool) -> None:
        items = list(items)
        for m in items:
            self._confirmed[m.id] = m
        if not items:
            if self._oldest is None:
                self.older_cursor, self.has_more = next_cursor, has_more
            return
        page_oldest = min((m.created_at, m.id) for m in items)
        if self._oldest is None or page_oldest <= self._oldest:
            self._oldest = page_oldest
            self.older_cursor, self.has_more = next_cursor, has_more

    async def refresh(self) -> None:
        """Refetch the newest page; drops provisional and failure overlays."""
        if self.conversation_id is None:
            return
        conversation_id = self.conversation_id
        data = await self.api.get_conversation(conversation_id, limit=self.page_size)
        if self.conversation_id != conversation_id:
            return
        self.conversation = ConversationOut(**data.model_dump(exclude={"messages"}))
        self._absorb(data.messages.items, data.messages.next_cursor, data.messages.has_more)
        self._provisionals = ()
        self._annotations = {}

    async def load_older(self) -> bool:
        conversation_id = self.conversation_id
        cursor = self.older_cursor
        if conversation_id is None or not cursor or self.is_loading_older:
            return False
        self.is_loading_older = True
        try:
            data = await self.api.get_conversation(conversation_id, cursor=cursor, limit=self.page_size)
        finally:
            self.is_loading_older = False
        if self.conversation_id != conversation_id:
            logger.debug("Discarding older page for %s after conversation switch", conversation_id)
            return False
        self._absorb(data.messages.items, data.messages.next_cursor, data.messages.has_more)
        return True

    # ---------- Optimistic overlay ----------

    def add_provisional(self, content: str, role: str = "user") -> ClientMessage:
        message = ClientMessage(
            id=f"{PROVISIONAL_PREFIX}{uuid4().hex}",
            role=role,
            content=content,
            created_at=time.time(),
            provisional=True,
        )
        self._provisionals = self._provisionals + (message,)
        return message

    def mark_failed(self, provisional_id: str, error_message: str, saved_message_id: Optional[str] = None) -> None:
        self._annotations[provisional_id] = FailureAnnotation(error_message, saved_message_id)

    def clear_failure(self, provisional_id: str) -> None:
        self._annotations.pop(provisional_id, None)

    def discard_provisional(self, provisional_id: str) -> None:
        self._provisionals = tuple(p for p in self._provisionals if p.id != provisional_id)
        self._annotations.pop(provisional_id, None)

    def find_provisional(self, message_id: str) -> Optional[ClientMessage]:
        """Look up a provisional by its own id or by the saved id it failed with."""
        for p in self._provisionals:
            note = self._annotations.get(p.id)
            if p.id == message_id or (note and note.failed_user_message_id == message_id):
                return p
        return None

    def failure_for(self, provisional_id: str) -> Optional[FailureAnnotation]:
        return self._annotations.get(provisional_id)

    # ---------- Derived ----------

    @property
    def state(self) -> TranscriptState:
        return TranscriptState(
            confirmed=tuple(self._confirmed.values()),
            provisionals=self._provisionals,
            annotations=dict(self._annotations),
        )

    @property
    def messages(self) -> List[ClientMessage]:
        return render_transcript(self.state)
