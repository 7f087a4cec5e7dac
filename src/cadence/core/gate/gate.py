"""The channel gate: rate limiter and circuit breaker in front of every send."""

from __future__ import annotations

import random

from cadence.contracts.events import CircuitListener
from cadence.core.config import GateSettings
from cadence.core.gate.breaker import CircuitBreaker, Clock
from cadence.core.gate.limiter import ChannelRateLimiter
from cadence.core.store.database import CadenceDB


class ChannelGate:
    """Combined gate all send tasks must pass before calling a transport.

    The circuit is checked first so that an open circuit consumes no rate
    budget. Both refusals surface as scheduling signals (``CircuitOpen``,
    ``RateLimited``) for the caller to turn into a delayed re-queue.

    Example:
        gate = ChannelGate.from_settings(db, settings.gate)

        gate.acquire("email")
        try:
            sender.send(recipient, content)
        except TransientTransportError:
            gate.record_failure("email")
            raise
        gate.record_success("email")
    """

    def __init__(self, limiter: ChannelRateLimiter, breaker: CircuitBreaker) -> None:
        self._limiter = limiter
        self._breaker = breaker

    @classmethod
    def from_settings(
        cls,
        db: CadenceDB,
        settings: GateSettings,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        listeners: list[CircuitListener] | None = None,
    ) -> ChannelGate:
        return cls(
            ChannelRateLimiter(db, settings, clock=clock, rng=rng),
            CircuitBreaker(db, settings, clock=clock, listeners=listeners),
        )

    @property
    def limiter(self) -> ChannelRateLimiter:
        return self._limiter

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def acquire(self, channel: str) -> None:
        """Admit one send on ``channel``.

        Raises:
            CircuitOpen: Channel is cooling down
            RateLimited: Channel window is exhausted
        """
        self._breaker.check(channel)
        self._limiter.acquire(channel)

    def record_success(self, channel: str) -> None:
        self._breaker.record_success(channel)

    def record_failure(self, channel: str) -> bool:
        return self._breaker.record_failure(channel)

    def close(self) -> None:
        self._limiter.close()
