from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import anyio

from ..errors import PipelineError, TransportError
from ..observability.logging import get_logger

log = get_logger("retry")

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.1
    max_delay_s: float = 2.0


async def _sleep_backoff(policy: RetryPolicy, attempt: int) -> None:
    # Full jitter exponential backoff.
    cap = policy.max_delay_s
    base = policy.base_delay_s
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    await anyio.sleep(random.random() * exp)


async def call_with_retry(
    operation: str,
    fn: Callable[[], Awaitable[T]],
    *,
    retry_policy: RetryPolicy | None = None,
) -> T:
    """
    Run an idempotent remote call, retrying retryable `PipelineError`s.

    Only reads go through here; a write that timed out may still have been
    applied server-side, so writes fail fast and let the reconciler roll back.
    """
    policy = retry_policy or RetryPolicy()

    last_exc: PipelineError | None = None
    for attempt in range(1, max(1, int(policy.max_attempts)) + 1):
        try:
            return await fn()
        except PipelineError as e:
            last_exc = e

            # Never retry not-found / client errors.
            if not e.retryable:
                raise

            if attempt >= policy.max_attempts:
                raise

            log.warning("remote_call_retry", operation=operation, attempt=attempt, error=str(e))
            await _sleep_backoff(policy, attempt)

    if last_exc is not None:
        raise last_exc
    raise TransportError(message="Remote request failed", operation=operation)
