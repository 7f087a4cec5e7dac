"""Per-channel circuit breaker on shared database counters.

A send failure increments the channel's failure counter, a success
decrements it (floor zero). At ``failure_threshold`` failures inside the
rolling window the circuit opens for ``cooldown_seconds``; while inside
the cooldown no send may reach the transport. After the cooldown sends
are let through again, and the circuit closes explicitly once successes
have brought the counter back to zero. A failure after the cooldown with
the counter still at threshold re-trips it.

Every mutation is a single conditional UPDATE.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from cadence.contracts.enums import CircuitState
from cadence.contracts.errors import CircuitOpen
from cadence.contracts.events import CircuitListener, CircuitOpened
from cadence.core.config import GateSettings
from cadence.core.logging import get_logger
from cadence.core.store.database import CadenceDB
from cadence.core.store.schema import channel_circuits_table

Clock = Callable[[], datetime]

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of a channel's circuit."""

    channel: str
    state: CircuitState
    failure_count: int
    opened_at: datetime | None
    cooling_down: bool
    retry_after: float


def log_circuit_opened(event: CircuitOpened) -> None:
    """Default listener: critical alert in the log stream."""
    logger.critical(
        "circuit_opened",
        channel=event.channel,
        failure_count=event.failure_count,
        opened_at=event.opened_at.isoformat(),
        cooldown_seconds=event.cooldown_seconds,
    )


class CircuitBreaker:
    """Tracks provider health per channel and sheds load when it degrades.

    Example:
        breaker = CircuitBreaker(db, settings.gate)
        breaker.add_listener(page_on_call)

        breaker.check("sms")          # raises CircuitOpen during cooldown
        try:
            send()
        except TransientTransportError:
            breaker.record_failure("sms")
        else:
            breaker.record_success("sms")
    """

    def __init__(
        self,
        db: CadenceDB,
        settings: GateSettings,
        *,
        clock: Clock | None = None,
        listeners: list[CircuitListener] | None = None,
    ) -> None:
        self._db = db
        self._settings = settings
        self._clock = clock or _utcnow
        self._listeners: list[CircuitListener] = (
            list(listeners) if listeners is not None else [log_circuit_opened]
        )

    def add_listener(self, listener: CircuitListener) -> None:
        self._listeners.append(listener)

    def _ensure_row(self, channel: str, now: float) -> None:
        table = channel_circuits_table
        with self._db.engine.connect() as conn:
            exists = conn.execute(
                select(table.c.channel).where(table.c.channel == channel)
            ).first()
        if exists is not None:
            return
        try:
            with self._db.connection() as conn:
                conn.execute(
                    table.insert().values(
                        channel=channel,
                        state=CircuitState.CLOSED.value,
                        failure_count=0,
                        window_started_at=now,
                        opened_at=None,
                        updated_at=self._clock(),
                    )
                )
        except IntegrityError:
            # Created concurrently by another worker; the row is what we need
            return

    def snapshot(self, channel: str) -> CircuitSnapshot:
        now_dt = self._clock()
        now = now_dt.timestamp()
        table = channel_circuits_table
        with self._db.engine.connect() as conn:
            row = conn.execute(select(table).where(table.c.channel == channel)).first()

        if row is None:
            return CircuitSnapshot(
                channel=channel,
                state=CircuitState.CLOSED,
                failure_count=0,
                opened_at=None,
                cooling_down=False,
                retry_after=0.0,
            )

        state = CircuitState(row.state)
        remaining = 0.0
        if state is CircuitState.OPEN and row.opened_at is not None:
            remaining = max(0.0, row.opened_at + self._settings.cooldown_seconds - now)
        return CircuitSnapshot(
            channel=channel,
            state=state,
            failure_count=row.failure_count,
            opened_at=datetime.fromtimestamp(row.opened_at, UTC)
            if row.opened_at is not None
            else None,
            cooling_down=remaining > 0,
            retry_after=max(1.0, remaining) if remaining > 0 else 0.0,
        )

    def check(self, channel: str) -> None:
        """Raise ``CircuitOpen`` while the channel is inside its cooldown.

        Raises:
            CircuitOpen: With retry_after = remaining cooldown (>= 1s)
        """
        snap = self.snapshot(channel)
        if snap.cooling_down:
            raise CircuitOpen(channel, snap.retry_after)

    def record_failure(self, channel: str) -> bool:
        """Count one send failure.

        Returns:
            True if this failure opened (or re-tripped) the circuit
        """
        now = self._clock().timestamp()
        self._ensure_row(channel, now)
        table = channel_circuits_table
        threshold = self._settings.failure_threshold
        cooldown = self._settings.cooldown_seconds

        with self._db.connection() as conn:
            # A closed circuit whose failure window lapsed starts a new window
            restarted = conn.execute(
                table.update()
                .where(table.c.channel == channel)
                .where(table.c.state == CircuitState.CLOSED.value)
                .where(
                    table.c.window_started_at
                    <= now - self._settings.failure_window_seconds
                )
                .values(failure_count=1, window_started_at=now, updated_at=self._clock())
            )
            if not restarted.rowcount:
                conn.execute(
                    table.update()
                    .where(table.c.channel == channel)
                    .values(
                        failure_count=table.c.failure_count + 1,
                        updated_at=self._clock(),
                    )
                )

            opened = conn.execute(
                table.update()
                .where(table.c.channel == channel)
                .where(table.c.state == CircuitState.CLOSED.value)
                .where(table.c.failure_count >= threshold)
                .values(state=CircuitState.OPEN.value, opened_at=now)
            ).rowcount
            if not opened:
                # Failure while probing after the cooldown restarts it
                opened = conn.execute(
                    table.update()
                    .where(table.c.channel == channel)
                    .where(table.c.state == CircuitState.OPEN.value)
                    .where(table.c.opened_at <= now - cooldown)
                    .where(table.c.failure_count >= threshold)
                    .values(opened_at=now)
                ).rowcount

            failure_count = conn.execute(
                select(table.c.failure_count).where(table.c.channel == channel)
            ).scalar_one()

        if opened:
            event = CircuitOpened(
                channel=channel,
                failure_count=int(failure_count),
                opened_at=datetime.fromtimestamp(now, UTC),
                cooldown_seconds=float(cooldown),
            )
            for listener in self._listeners:
                listener(event)
        return bool(opened)

    def record_success(self, channel: str) -> bool:
        """Offset one failure.

        Returns:
            True if this success closed the circuit
        """
        now = self._clock().timestamp()
        table = channel_circuits_table
        with self._db.connection() as conn:
            conn.execute(
                table.update()
                .where(table.c.channel == channel)
                .where(table.c.failure_count > 0)
                .values(failure_count=table.c.failure_count - 1, updated_at=self._clock())
            )
            closed = conn.execute(
                table.update()
                .where(table.c.channel == channel)
                .where(table.c.state == CircuitState.OPEN.value)
                .where(table.c.failure_count == 0)
                .values(
                    state=CircuitState.CLOSED.value,
                    opened_at=None,
                    window_started_at=now,
                )
            ).rowcount

        if closed:
            logger.info("circuit_closed", channel=channel)
        return bool(closed)
