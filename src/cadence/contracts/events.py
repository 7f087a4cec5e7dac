"""Reportable events emitted by the engine for alerting."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class CircuitOpened:
    """A channel's circuit breaker tripped.

    Distinct from an ordinary send failure: listeners typically page
    someone, since the provider behind the channel looks degraded.
    """

    channel: str
    failure_count: int
    opened_at: datetime
    cooldown_seconds: float


CircuitListener = Callable[[CircuitOpened], None]
