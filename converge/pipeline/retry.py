"""Retry with exponential backoff for transient provider failures.

Only TransientProviderError is retried. Permanent errors (ProviderError,
ResourceNotFoundError, timeouts) fail the change on the first attempt.

Delay for attempt n (1-based): min(max_delay, base_delay * 2**(n-1)),
then spread by +/- jitter (a fraction of the delay).
"""

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from converge.errors import TransientProviderError
from converge.utils.logging import logger


@dataclass
class RetryPolicy:
    """Backoff settings, built from the ``retry`` config section."""

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 20.0
    jitter: float = 0.25
    # Injectable for deterministic tests
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    @classmethod
    def from_config(cls, section: dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(section.get("max_attempts", 5))),
            base_delay=float(section.get("base_delay", 0.5)),
            max_delay=float(section.get("max_delay", 20.0)),
            jitter=float(section.get("jitter", 0.25)),
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt."""
        raw = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter:
            raw *= 1 + self.rng.uniform(-self.jitter, self.jitter)
        return max(0.0, raw)

    async def run(
        self,
        call: Callable[[], Awaitable[Any]],
        on_retry: Callable[[int, float, Exception], None] | None = None,
    ) -> tuple[Any, int]:
        """Await ``call()`` until it succeeds or attempts run out.

        Returns:
            (result, attempts used)

        Raises:
            The last TransientProviderError once max_attempts is reached,
            or any other exception immediately.
        """

        def wait(state: RetryCallState) -> float:
            return self.delay(state.attempt_number)

        def before_sleep(state: RetryCallState) -> None:
            error = state.outcome.exception()
            delay = state.next_action.sleep
            logger.debug(
                "Transient failure on attempt {}: {} (retry in {:.2f}s)", state.attempt_number, error, delay
            )
            if on_retry is not None:
                on_retry(state.attempt_number, delay, error)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait,
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result = await call()
        except TransientProviderError as e:
            logger.warning("Giving up after {} attempts: {}", self.max_attempts, e)
            raise
        return result, attempt.retry_state.attempt_number
