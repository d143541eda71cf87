from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant"]


class ApiModel(BaseModel):
    """Wire models use camelCase on the wire and snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True)


# ---------- Requests ----------

class ConversationCreate(ApiModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)


class ConversationUpdate(ApiModel):
    title: str = Field(min_length=1, max_length=200)


class MessageIn(ApiModel):
    content: str = Field(min_length=1, max_length=10000)
    role: Role = "user"
    existing_message_id: Optional[str] = Field(default=None, alias="existingMessageId")


# ---------- Responses ----------

class ConversationOut(ApiModel):
    id: str
    title: str
    display_index: int = Field(alias="displayIndex")
    created_at: float = Field(alias="createdAt")
    last_message_at: Optional[float] = Field(default=None, alias="lastMessageAt")


class ConversationListItem(ConversationOut):
    message_count: int = Field(default=0, alias="messageCount")


class MessageOut(ApiModel):
    id: str
    conversation_id: str = Field(alias="conversationId")
    role: Role
    content: str
    created_at: float = Field(alias="createdAt")


class MessagePage(ApiModel):
    items: List[MessageOut] = []
    next_cursor: Optional[str] = Field(default=None, alias="nextCursor")
    prev_cursor: Optional[str] = Field(default=None, alias="prevCursor")
    has_more: bool = Field(default=False, alias="hasMore")
    has_newer: bool = Field(default=False, alias="hasNewer")


class ConversationWithMessages(ConversationOut):
    messages: MessagePage


class SendMessageResponse(ApiModel):
    message: MessageOut
    reply: MessageOut
