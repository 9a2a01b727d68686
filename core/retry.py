from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from services.actor.errors import ChatError, classify
from shared.config.client import RetryConfig
from shared.logging.logger import get_logger

log = get_logger("core.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    `max_attempts` counts retries after the first try; 0 means fail on
    the first error. Only transient errors are ever retried.
    """

    max_attempts: int = 0
    base_delay: float = 1.0
    cap_delay: float = 10.0

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.cap_delay)

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=max(0, cfg.max_attempts),
            base_delay=cfg.base_delay,
            cap_delay=cfg.cap_delay,
        )


NO_RETRY = RetryPolicy()


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Run `operation`, retrying transient ChatErrors per `policy`.

    Every failure leaves here classified; non-transient kinds are raised
    immediately.
    """
    sleep = sleep or asyncio.sleep
    attempt = 0

    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error: ChatError = classify(e)
            if not error.transient or attempt >= policy.max_attempts:
                if error is e:
                    raise
                raise error from e

            delay = policy.delay(attempt)
            attempt += 1
            log.warning(
                f"[{label}] {error.kind.value} "
                f"(retry {attempt}/{policy.max_attempts} in {delay:.1f}s): {error.detail}"
            )
            await sleep(delay)
