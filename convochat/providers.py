import abc
import logging
import random
from typing import List, Optional, Sequence

import openai
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

from convochat.cancel import CancelToken, cancellable_sleep
from convochat.config import Settings
from convochat.errors import (
    ProviderClientError,
    ProviderNetworkError,
    ProviderServerError,
    ProviderTimeoutError,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a helpful AI assistant that provides clear, structured, and concise answers."
MOCK_PREFIX = "This is a mock response"


class Turn(BaseModel):
    role: str
    content: str


class Completion(BaseModel):
    completion: str


class CompletionProvider(abc.ABC):
    """Uniform interface to a text-completion service.

    Implementations raise only ``ProviderError`` subclasses or
    ``convochat.errors.CancelledError``.
    """

    name = "provider"

    @abc.abstractmethod
    async def complete(self, turns: Sequence[Turn], cancel_token: Optional[CancelToken] = None) -> Completion:
        ...


# ------------------------------
# Local stub
# ------------------------------
class MockProvider(CompletionProvider):
    """Canned replies after a delay, with optional injected failures and hangs."""

    name = "mock"

    def __init__(
        self,
        delay: float = 1.0,
        failure_rate: float = 0.0,
        hang_rate: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        self.delay = delay
        self.failure_rate = failure_rate
        self.hang_rate = hang_rate
        self.rng = rng or random.Random()
        self.calls = 0

    async def complete(self, turns, cancel_token=None):
        self.calls += 1
        roll = self.rng.random()
        if roll < self.hang_rate:
            logger.debug("Mock LLM hanging (call %s)", self.calls)
            await cancellable_sleep(None, cancel_token)
        await cancellable_sleep(self.delay, cancel_token)
        if roll < self.hang_rate + self.failure_rate:
            raise ProviderServerError("Mock LLM unavailable", status=503)

        last_user = next((t.content for t in reversed(turns) if t.role == "user"), "")
        return Completion(completion=f"{MOCK_PREFIX} to: {last_user}")


# ------------------------------
# OpenAI-compatible endpoint (OpenAI, Ollama /v1, ...)
# ------------------------------
def build_prompt_messages(turns: Sequence[Turn], system_prompt: Optional[str] = SYSTEM_PROMPT) -> List[BaseMessage]:
    """Rebuild the conversation as LangChain chat messages."""
    messages: List[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    for t in turns:
        if not t.content:
            continue
        if t.role == "user":
            messages.append(HumanMessage(content=t.content))
        elif t.role == "assistant":
            messages.append(AIMessage(content=t.content))
    return messages


def _content_text(content) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class OpenAICompatibleProvider(CompletionProvider):
    name = "real"

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str,
        timeout: float = 12.0,
        temperature: float = 0.7,
        system_prompt: Optional[str] = SYSTEM_PROMPT,
        llm=None,
    ):
        self.model = model
        self.system_prompt = system_prompt
        # Retries belong to the executor, so the SDK must not retry on its own.
        self.llm = llm or ChatOpenAI(
            model=model,
            base_url=base_url,
            api_key=api_key,
            temperature=temperature,
            timeout=timeout,
            max_retries=0,
        )

    async def complete(self, turns, cancel_token=None):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        messages = build_prompt_messages(turns, self.system_prompt)
        logger.debug("Calling %s with %s messages", self.model, len(messages))
        try:
            response = await self.llm.ainvoke(messages)
        except openai.APITimeoutError as exc:
            raise ProviderTimeoutError(str(exc)) from exc
        except openai.APIConnectionError as exc:
            raise ProviderNetworkError(str(exc)) from exc
        except openai.APIStatusError as exc:
            if exc.status_code >= 500:
                raise ProviderServerError(exc.message, status=exc.status_code) from exc
            raise ProviderClientError(exc.message, status=exc.status_code) from exc
        except (openai.OpenAIError, ValueError) as exc:
            # Malformed or error-shaped responses; retrying would get the same answer.
            raise ProviderClientError(str(exc) or type(exc).__name__) from exc
        return Completion(completion=_content_text(response.content))


def create_provider(settings: Settings) -> CompletionProvider:
    """Single selection point for the active provider."""
    if settings.llm_provider == "mock":
        provider = MockProvider(
            delay=settings.mock_llm_delay,
            failure_rate=settings.mock_llm_failure_rate,
            hang_rate=settings.mock_llm_hang_rate,
        )
    else:
        provider = OpenAICompatibleProvider(
            base_url=settings.llm_base_url,
            model=settings.llm_model,
            api_key=settings.llm_api_key,
            timeout=settings.llm_timeout,
        )
    logger.info("LLM provider selected: %s", provider.name)
    return provider
