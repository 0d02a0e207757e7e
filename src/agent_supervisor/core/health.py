"""Readiness polling for a freshly started agent."""

import logging
import time
from collections.abc import Awaitable
from typing import Any, Protocol

from agent_supervisor.constants import (
    DEFAULT_HEALTH_MAX_ATTEMPTS,
    IN_PROCESS_HEALTH_DELAY_MS,
    SUBPROCESS_HEALTH_BASE_DELAY_MS,
)
from agent_supervisor.errors import HealthTimeout
from agent_supervisor.models import BackoffPolicy, HealthCheckResult, HealthState
from agent_supervisor.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class HealthClient(Protocol):
    """Anything that can issue one health check call."""

    def health(self) -> Awaitable[Any]: ...


class HealthProbe:
    """Poll a health check until it succeeds, is cancelled or runs out of attempts."""

    def __init__(
        self,
        base_delay_ms: int = SUBPROCESS_HEALTH_BASE_DELAY_MS,
        max_attempts: int = DEFAULT_HEALTH_MAX_ATTEMPTS,
        backoff: BackoffPolicy | str = BackoffPolicy.LINEAR,
    ):
        if base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.base_delay_ms = base_delay_ms
        self.max_attempts = max_attempts
        self.backoff = BackoffPolicy(backoff)

    @classmethod
    def subprocess(cls) -> "HealthProbe":
        """Policy for agents started as child processes: 5ms linear backoff."""
        return cls(SUBPROCESS_HEALTH_BASE_DELAY_MS, DEFAULT_HEALTH_MAX_ATTEMPTS, BackoffPolicy.LINEAR)

    @classmethod
    def in_process(cls) -> "HealthProbe":
        """Policy for agents served in-process: fixed 100ms between attempts."""
        return cls(IN_PROCESS_HEALTH_DELAY_MS, DEFAULT_HEALTH_MAX_ATTEMPTS, BackoffPolicy.FIXED)

    @classmethod
    def from_settings(cls, settings: Any) -> "HealthProbe":
        """Build a probe from supervisor settings."""
        return cls(settings.health_base_delay_ms, settings.health_max_attempts, settings.health_backoff)

    def delay_ms(self, attempt: int) -> int:
        """Get the delay before the 0-based ``attempt``."""
        if attempt <= 0:
            return 0
        if self.backoff == BackoffPolicy.FIXED:
            return self.base_delay_ms
        return attempt * self.base_delay_ms

    async def wait_until_ready(self, client: HealthClient, cancel: CancellationToken | None = None) -> HealthState:
        """Poll ``client.health()`` until it succeeds.

        Attempts are strictly sequential. A fired token ends the wait at once;
        an in-flight call is left to finish on its own and its result ignored.

        Args:
            client: Object whose ``health()`` coroutine raises on failure
            cancel: Token that aborts the wait

        Returns:
            The final health state, with ``ready`` set

        Raises:
            HealthTimeout: After ``max_attempts`` failed calls
            Aborted: Or whatever error ``cancel`` carries, once it fires
        """
        cancel = cancel or CancellationToken("health")
        state = HealthState()

        while True:
            cancel.raise_if_cancelled()

            attempt = state.attempts + 1
            started = time.monotonic()
            try:
                await cancel.race(client.health())
            except Exception as e:
                if cancel.cancelled:
                    raise cancel.exception() from None
                state.record(
                    HealthCheckResult(
                        attempt=attempt, ok=False, error=str(e) or type(e).__name__, duration_ms=_elapsed_ms(started),
                    )
                )
                logger.debug("Health attempt %d/%d failed: %s", attempt, self.max_attempts, e)
            else:
                state.record(HealthCheckResult(attempt=attempt, ok=True, duration_ms=_elapsed_ms(started)))
                logger.debug("Health attempt %d succeeded", attempt)
                return state

            if state.attempts >= self.max_attempts:
                logger.warning("Agent not healthy after %d attempts: %s", state.attempts, state.last_error)
                raise HealthTimeout(state.attempts)

            await cancel.sleep(self.delay_ms(state.attempts) / 1000)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
