"""Shared fixtures: in-memory Mongo, scripted providers and an in-process app."""

import asyncio
from typing import List, Optional

import httpx
from mongomock_motor import AsyncMongoMockClient

from convochat.cancel import cancellable_sleep
from convochat.config import Settings
from convochat.errors import CancelledError
from convochat.main import create_app
from convochat.providers import Completion, CompletionProvider
from convochat.store import MessageStore

HANG = object()


def make_store(clock=None) -> MessageStore:
    db = AsyncMongoMockClient()["convochat_test"]
    if clock is None:
        return MessageStore(db)
    return MessageStore(db, clock=clock)


def make_settings(**overrides) -> Settings:
    values = dict(
        log_level="WARNING",
        llm_timeout=2.0,
        llm_max_retries=2,
        llm_backoff_base=0.0,
        cursor_secret="test-secret",
    )
    values.update(overrides)
    return Settings(**values)


class ScriptedProvider(CompletionProvider):
    """Plays back a fixed list of outcomes, one per call.

    Each outcome is a completion string, an exception instance, or ``HANG``.
    The last outcome repeats once the script runs out.
    """

    name = "scripted"

    def __init__(self, outcomes: List, delay: float = 0.0):
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls = 0
        self.seen_turns = []

    async def complete(self, turns, cancel_token=None):
        index = min(self.calls, len(self.outcomes) - 1)
        self.calls += 1
        self.seen_turns.append([(t.role, t.content) for t in turns])
        outcome = self.outcomes[index]
        if outcome is HANG:
            await cancellable_sleep(None, cancel_token)
        if self.delay:
            await cancellable_sleep(self.delay, cancel_token)
        if isinstance(outcome, BaseException):
            raise outcome
        return Completion(completion=outcome)


class CancellingProvider(CompletionProvider):
    name = "cancelling"

    async def complete(self, turns, cancel_token=None):
        raise CancelledError("Request aborted")


class RecordingSleep:
    """Stand-in for the executor's sleep that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: Optional[float], token=None):
        self.delays.append(delay)
        if token is not None:
            token.raise_if_cancelled()
        await asyncio.sleep(0)


def make_app(provider: CompletionProvider, store: Optional[MessageStore] = None, **settings):
    store = store or make_store()
    app = create_app(make_settings(**settings), store=store, provider=provider)
    return app, store


def asgi_client(app, base_url: str = "http://testserver") -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=base_url)
