"""MongoDB-backed store for conversations and messages (motor)."""

import logging
import time
from typing import List, Optional
from uuid import uuid4

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from convochat.models import ConversationListItem, ConversationOut, MessageOut
from convochat.pagination import CursorData

logger = logging.getLogger(__name__)

DISPLAY_COUNTER_ID = "conversation_display_index"


def conversation_from_doc(doc: dict) -> ConversationOut:
    return ConversationOut(
        id=doc["_id"],
        title=doc["title"],
        display_index=doc["display_index"],
        created_at=doc["created_at"],
        last_message_at=doc.get("last_message_at"),
    )


def message_from_doc(doc: dict) -> MessageOut:
    return MessageOut(
        id=doc["_id"],
        conversation_id=doc["conversation_id"],
        role=doc["role"],
        content=doc["content"],
        created_at=doc["created_at"],
    )


class MessageStore:
    """Durable record of conversations and their ordered messages.

    Messages are ordered by ``(created_at, _id)``. Timestamps handed out by
    one store are strictly increasing, so two writes never share a
    ``created_at``.
    """

    def __init__(self, db, clock=time.time):
        self.db = db
        self.conversations = db["conversations"]
        self.messages = db["messages"]
        self.counters = db["counters"]
        self._clock = clock
        self._last_ts = 0.0

    def _now(self) -> float:
        ts = self._clock()
        if ts <= self._last_ts:
            ts = self._last_ts + 1e-6
        self._last_ts = ts
        return ts

    async def ensure_indexes(self) -> None:
        await self.messages.create_index(
            [("conversation_id", ASCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        await self.conversations.create_index("display_index", unique=True)

    # ---------- Conversations ----------

    async def _next_display_index(self) -> int:
        doc = await self.counters.find_one_and_update(
            {"_id": DISPLAY_COUNTER_ID},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["value"])

    async def create_conversation(self, title: Optional[str] = None) -> ConversationOut:
        display_index = await self._next_display_index()
        doc = {
            "_id": str(uuid4()),
            "title": title or f"Conversation #{display_index}",
            "display_index": display_index,
            "created_at": self._now(),
            "last_message_at": None,
        }
        await self.conversations.insert_one(doc)
        logger.info("Conversation created id=%s display_index=%s", doc["_id"], display_index)
        return conversation_from_doc(doc)

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationOut]:
        doc = await self.conversations.find_one({"_id": conversation_id})
        return conversation_from_doc(doc) if doc else None

    async def list_conversations(self) -> List[ConversationListItem]:
        items = []
        cursor = self.conversations.find({}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        async for doc in cursor:
            count = await self.messages.count_documents({"conversation_id": doc["_id"]})
            base = conversation_from_doc(doc)
            items.append(ConversationListItem(**base.model_dump(), message_count=count))
        return items

    async def rename_conversation(self, conversation_id: str, title: str) -> Optional[ConversationOut]:
        doc = await self.conversations.find_one_and_update(
            {"_id": conversation_id},
            {"$set": {"title": title}},
            return_document=ReturnDocument.AFTER,
        )
        return conversation_from_doc(doc) if doc else None

    async def touch_conversation(self, conversation_id: str, ts: Optional[float] = None) -> float:
        ts = ts if ts is not None else self._now()
        await self.conversations.update_one(
            {"_id": conversation_id}, {"$set": {"last_message_at": ts}}
        )
        return ts

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and every message it owns."""
        res = await self.conversations.delete_one({"_id": conversation_id})
        if res.deleted_count == 0:
            return False
        removed = await self.messages.delete_many({"conversation_id": conversation_id})
        logger.info(
            "Conversation deleted id=%s messages_removed=%s", conversation_id, removed.deleted_count
        )
        return True

    # ---------- Messages ----------

    async def create_message(self, conversation_id: str, role: str, content: str) -> MessageOut:
        doc = {
            "_id": str(uuid4()),
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "created_at": self._now(),
        }
        await self.messages.insert_one(doc)
        return message_from_doc(doc)

    async def get_message(self, message_id: str) -> Optional[MessageOut]:
        doc = await self.messages.find_one({"_id": message_id})
        return message_from_doc(doc) if doc else None

    async def find_recent_duplicate(
        self, conversation_id: str, role: str, content: str, window: float
    ) -> Optional[MessageOut]:
        """Most recent message with identical content inside the recency window."""
        since = self._clock() - window
        cursor = (
            self.messages.find({
                "conversation_id": conversation_id,
                "role": role,
                "content": content,
                "created_at": {"$gte": since},
            })
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .limit(1)
        )
        async for doc in cursor:
            return message_from_doc(doc)
        return None

    async def list_history(self, conversation_id: str) -> List[MessageOut]:
        cursor = self.messages.find({"conversation_id": conversation_id}).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        return [message_from_doc(doc) async for doc in cursor]

    async def list_messages_page(
        self,
        conversation_id: str,
        cursor: Optional[CursorData],
        limit: int,
        direction: str = "older",
    ) -> List[MessageOut]:
        """Fetch up to ``limit + 1`` rows strictly beyond the cursor boundary.

        ``older`` walks backwards (newest first), ``newer`` walks forwards.
        """
        query = {"conversation_id": conversation_id}
        if direction == "older":
            op, order = "$lt", DESCENDING
        else:
            op, order = "$gt", ASCENDING
        if cursor is not None:
            query["$or"] = [
                {"created_at": {op: cursor.created_at}},
                {"created_at": cursor.created_at, "_id": {op: cursor.id}},
            ]
        rows = self.messages.find(query).sort([("created_at", order), ("_id", order)]).limit(limit + 1)
        return [message_from_doc(doc) async for doc in rows]
