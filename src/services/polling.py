"""
src/services/polling.py — Poll budgets and an injectable sleep.

Budgets are plain values so tests can shrink them, and `sleep` is a parameter
everywhere it is used so tests can fast-forward instead of waiting.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from config import settings

Sleep = Callable[[float], Awaitable[None]]


async def real_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


@dataclass(frozen=True)
class PollBudget:
    """A fixed number of attempts spaced by a fixed interval."""

    max_attempts: int
    interval_seconds: float

    @property
    def ceiling_seconds(self) -> float:
        return self.max_attempts * self.interval_seconds


def activation_budget() -> PollBudget:
    return PollBudget(
        max_attempts=settings.activation_poll_attempts,
        interval_seconds=settings.activation_poll_interval_seconds,
    )


def settlement_budget() -> PollBudget:
    return PollBudget(
        max_attempts=settings.settlement_poll_attempts,
        interval_seconds=settings.settlement_poll_interval_seconds,
    )
