import asyncio
import logging
from typing import Optional, Sequence

from convochat.cancel import CancelToken, cancellable_sleep
from convochat.errors import CancelledError, ProviderError, ProviderTimeoutError, UpstreamUnavailableError
from convochat.providers import Completion, CompletionProvider, Turn

logger = logging.getLogger(__name__)


class ResilientExecutor:
    """Run provider calls with a per-attempt timeout, retries and cancellation.

    Network and server-class failures (including attempt timeouts) are
    retried up to ``max_retries`` times with exponential backoff. Client-class
    failures are not retried. A fired cancel token stops the current attempt
    and any pending backoff. Each ``complete`` call has its own budget.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        timeout: float = 12.0,
        max_retries: int = 2,
        backoff_base: float = 0.5,
        sleep=cancellable_sleep,
    ):
        self.provider = provider
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._sleep = sleep

    def backoff_delay(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based): 0.5s, 1s, 2s, ..."""
        return self.backoff_base * (2 ** (retry_number - 1))

    async def complete(self, turns: Sequence[Turn], cancel_token: Optional[CancelToken] = None) -> Completion:
        token = cancel_token or CancelToken()
        last_error: Optional[ProviderError] = None
        attempts = 0

        for attempt in range(self.max_retries + 1):
            token.raise_if_cancelled()
            attempts += 1
            try:
                return await self._attempt(turns, token)
            except ProviderError as exc:
                last_error = exc
                if not exc.retryable or attempt == self.max_retries:
                    break
                delay = self.backoff_delay(attempt + 1)
                logger.warning(
                    "LLM request failed, retrying (attempt=%s max_retries=%s delay=%.2fs status=%s): %s",
                    attempt + 1, self.max_retries, delay, exc.status, exc,
                )
                await self._sleep(delay, token)

        logger.error("LLM completion failed after %s attempt(s): %s", attempts, last_error)
        raise UpstreamUnavailableError(attempts=attempts) from last_error

    async def _attempt(self, turns: Sequence[Turn], token: CancelToken) -> Completion:
        call = asyncio.ensure_future(self.provider.complete(turns, token.child()))
        stop = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({call, stop}, timeout=self.timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            raise
        finally:
            stop.cancel()

        if call in done:
            return call.result()

        call.cancel()
        try:
            await call
        except (asyncio.CancelledError, ProviderError, CancelledError):
            pass
        if token.cancelled:
            raise CancelledError(f"Request cancelled ({token.reason})")
        raise ProviderTimeoutError(f"timeout of {self.timeout}s exceeded")
