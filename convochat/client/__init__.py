from convochat.client.api import ApiRequestError, ChatApiClient, FailureKind
from convochat.client.controller import SendController
from convochat.client.reconcile import ClientMessage, ConversationView, ScrollTracker, render_transcript
from convochat.client.undo import DeleteWithUndo

__all__ = [
    "ApiRequestError",
    "ChatApiClient",
    "ClientMessage",
    "ConversationView",
    "DeleteWithUndo",
    "FailureKind",
    "ScrollTracker",
    "SendController",
    "render_transcript",
]
