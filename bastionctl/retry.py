"""Deadline-bounded exponential backoff.

Every provider, DNS and liveness call goes through ``retry_until``. The delay
starts at the policy's base and grows by ``factor`` per attempt, but a sleep
never outlasts the caller's deadline and each attempt is itself cut off when
the deadline passes.

Example:
    from bastionctl.retry import API, Deadline, retry_until

    deadline = Deadline.after(15 * 60)
    server_id = await retry_until(
        deadline, lambda: directory.create_server(cloud, request), policy=API,
    )
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import aiohttp
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    wait_exponential,
)

from bastionctl.exceptions import DeadlineExceeded, TransientError
from bastionctl.infra.http import HttpError

type RetryPredicate = Callable[[BaseException], bool]

_TRANSIENT_STATUSES = frozenset({0, 401, 408, 429})

log = logger.bind(component="retry")


@dataclass(frozen=True, slots=True)
class Deadline:
    """Absolute point on the monotonic clock."""

    at: float

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.at

    def sooner(self, seconds: float) -> Deadline:
        """The earlier of this deadline and ``seconds`` from now."""
        return Deadline(min(self.at, time.monotonic() + seconds))


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    base_delay: float
    factor: float = 1.1


PROBE = BackoffPolicy(base_delay=1.0)
API = BackoffPolicy(base_delay=15.0)
LISTING = BackoffPolicy(base_delay=60.0)


def is_transient(exc: BaseException) -> bool:
    """Classify an error as retryable.

    Connection failures, auth hiccups, throttling and server-side errors are
    transient. Anything else (bad request, not found, decode errors) is fatal.
    """
    match exc:
        case DeadlineExceeded():
            return False
        case (
            TransientError()
            | aiohttp.ClientConnectionError()
            | ConnectionError()
            | TimeoutError()
        ):
            return True
        case HttpError(status=status):
            return status in _TRANSIENT_STATUSES or status >= 500
        case _:
            return False


def _log_retry(state: RetryCallState) -> None:
    outcome = state.outcome
    exc = outcome.exception() if outcome is not None else None
    delay = state.next_action.sleep if state.next_action is not None else 0.0
    log.warning(
        "Attempt {n} failed with {kind}: {error}. Retrying in {delay:.1f}s",
        n=state.attempt_number, kind=type(exc).__name__, error=exc, delay=delay,
    )


async def _bounded[T](operation: Callable[[], Awaitable[T]], deadline: Deadline) -> T:
    try:
        async with asyncio.timeout(deadline.remaining()) as scope:
            return await operation()
    except TimeoutError as e:
        if scope.expired():
            raise DeadlineExceeded("Deadline reached while the attempt was in flight") from e
        raise


async def retry_until[T](
    deadline: Deadline,
    operation: Callable[[], Awaitable[T]],
    *,
    policy: BackoffPolicy = API,
    retry_on: RetryPredicate = is_transient,
) -> T:
    """Run ``operation`` until it succeeds, fails fatally, or the deadline passes.

    Args:
        deadline: Absolute deadline shared by all attempts.
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Base delay and growth factor.
        retry_on: Predicate deciding whether an exception means "try again".
            Exceptions it rejects propagate immediately.

    Raises:
        DeadlineExceeded: The deadline passed; chained to the last transient error.
    """
    backoff = wait_exponential(
        multiplier=policy.base_delay,
        exp_base=policy.factor,
        min=policy.base_delay,
        max=float("inf"),
    )

    def wait(state: RetryCallState) -> float:
        return min(backoff(state), deadline.remaining())

    def stop(_: RetryCallState) -> bool:
        return deadline.expired

    retrying = AsyncRetrying(
        stop=stop,
        wait=wait,
        retry=retry_if_exception(retry_on),
        before_sleep=_log_retry,
    )

    try:
        async for attempt in retrying:
            with attempt:
                result = await _bounded(operation, deadline)
    except RetryError as e:
        last = e.last_attempt.exception()
        raise DeadlineExceeded(
            f"Gave up after {e.last_attempt.attempt_number} attempts: {last}"
        ) from last

    return result
