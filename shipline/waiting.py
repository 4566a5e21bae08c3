"""
Bounded polling for shipline.

Every blocking wait in the pipeline (ingress readiness gates, rollout status,
external address polling) goes through ``wait_until``: a predicate polled at
a fixed interval until it holds or a deadline passes. Transient cluster
errors raised by the predicate count as "not yet"; anything else propagates
immediately.

Classes:
    GateState: Terminal states of a readiness gate
    ReadinessGate: A named predicate with its interval and timeout

Author: Nosa Omorodion
Version: 0.3.0
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_delay,
)

from .errors import ReadinessTimeout, TransientClusterError

logger = logging.getLogger("shipline.waiting")

Predicate = Callable[[], Awaitable[bool]]
Sleep = Callable[[float], Awaitable[None]]


class GateState(str, Enum):
    pending = "pending"
    satisfied = "satisfied"
    timed_out = "timed-out"


def _not_ready(result: object) -> bool:
    return not result


def _wait_within(interval: float, timeout: float):
    """Fixed interval, shortened so the last sleep ends on the deadline."""

    def wait(retry_state) -> float:
        remaining = timeout - (time.monotonic() - retry_state.start_time)
        return max(0.0, min(interval, remaining))

    return wait


async def wait_until(
    predicate: Predicate,
    *,
    name: str,
    interval: float,
    timeout: float,
    sleep: Optional[Sleep] = None,
) -> float:
    """
    Poll ``predicate`` until it returns a truthy value.

    Args:
        predicate: Async callable returning True once the condition holds
        name: Gate name used in logs and in the timeout error
        interval: Seconds between polls; the last sleep is cut short at the deadline
        timeout: Overall budget in seconds; 0 means a single check
        sleep: Sleep coroutine (defaults to asyncio.sleep)

    Returns:
        float: Seconds elapsed until the predicate held

    Raises:
        ReadinessTimeout: If the deadline passed first
    """
    start = time.monotonic()

    def _log_retry(retry_state) -> None:
        outcome = retry_state.outcome
        reason = outcome.exception() if outcome.failed else "not ready"
        logger.debug(
            f"Waiting for {name}: {reason}",
            extra={"gate": name, "attempt": retry_state.attempt_number},
        )

    retrying = AsyncRetrying(
        stop=stop_after_delay(timeout),
        wait=_wait_within(interval, timeout),
        retry=(
            retry_if_result(_not_ready)
            | retry_if_exception_type(TransientClusterError)
        ),
        before_sleep=_log_retry,
        sleep=sleep or asyncio.sleep,
    )
    try:
        await retrying(predicate)
    except RetryError as exc:
        elapsed = time.monotonic() - start
        last = exc.last_attempt
        last_error = last.exception() if last.failed else None
        logger.warning(
            f"Gate '{name}' timed out after {elapsed:.1f}s",
            extra={"gate": name, "elapsed": elapsed},
        )
        raise ReadinessTimeout(name, elapsed, last_error) from last_error
    elapsed = time.monotonic() - start
    logger.debug(f"Gate '{name}' satisfied after {elapsed:.1f}s")
    return elapsed


@dataclass
class ReadinessGate:
    """
    A named readiness predicate with its poll interval and timeout.

    ``state`` starts as pending and ends as satisfied or timed-out;
    ``on_satisfied`` runs once the predicate holds.
    """

    name: str
    predicate: Predicate
    interval: float
    timeout: float
    on_satisfied: Optional[Callable[[], Awaitable[None]]] = None
    state: GateState = GateState.pending
    elapsed: Optional[float] = None

    async def wait(self, sleep: Optional[Sleep] = None) -> float:
        try:
            self.elapsed = await wait_until(
                self.predicate,
                name=self.name,
                interval=self.interval,
                timeout=self.timeout,
                sleep=sleep,
            )
        except ReadinessTimeout as exc:
            self.state = GateState.timed_out
            self.elapsed = exc.elapsed
            raise
        self.state = GateState.satisfied
        if self.on_satisfied is not None:
            await self.on_satisfied()
        return self.elapsed
