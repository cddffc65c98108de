"""
Convergence/readiness poller.

Fixed-interval polling of a side-effect-free status probe, bounded by a
caller-supplied timeout. Used for cluster API availability, CRD
establishment, certificate issuance and deletion confirmation.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Awaitable, Callable

import structlog

from stagecraft.core.errors import TimedOut

logger = structlog.get_logger()


class ProbeStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class PollResult(StrEnum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


Probe = Callable[[], Awaitable[ProbeStatus]]
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class PollOutcome:
    result: PollResult
    attempts: int
    elapsed: float

    @property
    def ready(self) -> bool:
        return self.result == PollResult.READY


async def wait_until_ready(
    probe: Probe,
    timeout: float,
    interval: float,
    *,
    clock: Clock = time.monotonic,
    sleep: Sleep = asyncio.sleep,
) -> PollOutcome:
    """Poll `probe` every `interval` seconds until READY, FAILED or `timeout`.

    The probe runs once immediately and then once per interval, so a probe
    that never becomes ready is called at most ``timeout / interval + 1``
    times. The last sleep is shortened so the wait never overshoots.
    """
    if interval <= 0:
        raise ValueError("interval must be positive")

    start = clock()
    deadline = start + timeout
    attempts = 0

    while True:
        attempts += 1
        status = await probe()
        now = clock()
        if status == ProbeStatus.READY:
            return PollOutcome(PollResult.READY, attempts, now - start)
        if status == ProbeStatus.FAILED:
            return PollOutcome(PollResult.FAILED, attempts, now - start)
        if now >= deadline:
            return PollOutcome(PollResult.TIMED_OUT, attempts, now - start)
        await sleep(min(interval, deadline - now))


async def ensure_ready(
    probe: Probe,
    *,
    node_id: str,
    kind: str,
    waiting_for: str,
    timeout: float,
    interval: float,
    clock: Clock = time.monotonic,
    sleep: Sleep = asyncio.sleep,
) -> PollOutcome:
    """wait_until_ready, raising TimedOut naming the resource on expiry."""
    outcome = await wait_until_ready(probe, timeout, interval, clock=clock, sleep=sleep)
    if outcome.result == PollResult.TIMED_OUT:
        logger.warning(
            "readiness_timed_out",
            node_id=node_id,
            kind=kind,
            waiting_for=waiting_for,
            elapsed=round(outcome.elapsed, 3),
            budget=timeout,
            attempts=outcome.attempts,
        )
        raise TimedOut(node_id, kind, waiting_for, outcome.elapsed, timeout)
    return outcome
