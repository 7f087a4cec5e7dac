# tests/conftest.py
"""Shared test fixtures and helpers.

Every engine test runs against an in-memory SQLite database, fake
transports and a controllable clock, so time-dependent behaviour (waits,
rate windows, circuit cooldowns, staleness) is driven explicitly.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/
"""

import os
import random
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings

from cadence.contracts.enums import Channel
from cadence.core.config import CadenceSettings
from cadence.core.store.database import CadenceDB
from cadence.core.store.models import Recipient
from cadence.core.store.recipients import RecipientStore
from cadence.engine.gateway import FakeSender
from cadence.engine.runtime import CadenceEngine

# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Clock
# =============================================================================

# Aligned to a minute boundary so rate windows start at a known instant
EPOCH = datetime(2026, 3, 2, 9, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock, callable like ``datetime.now``."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Database and engine
# =============================================================================


@pytest.fixture
def db() -> Iterator[CadenceDB]:
    database = CadenceDB.in_memory()
    yield database
    database.close()


@pytest.fixture
def email_sender() -> FakeSender:
    return FakeSender(Channel.EMAIL)


@pytest.fixture
def sms_sender() -> FakeSender:
    return FakeSender(Channel.SMS)


@pytest.fixture
def make_engine(
    db: CadenceDB,
    clock: FakeClock,
    email_sender: FakeSender,
    sms_sender: FakeSender,
) -> Iterator[Callable[..., CadenceEngine]]:
    """Factory for engines sharing the test database, clock and fake senders."""
    built: list[CadenceEngine] = []

    def _make(settings: CadenceSettings | None = None, **kwargs: Any) -> CadenceEngine:
        engine = CadenceEngine.build(
            settings or CadenceSettings(),
            db=db,
            senders={Channel.EMAIL: email_sender, Channel.SMS: sms_sender},
            clock=clock,
            rng=random.Random(0),
            **kwargs,
        )
        built.append(engine)
        return engine

    yield _make
    for engine in built:
        # The db fixture owns the database
        engine.send_handler.close()


@pytest.fixture
def engine(make_engine: Callable[..., CadenceEngine]) -> CadenceEngine:
    return make_engine()


@pytest.fixture
def seed_recipients(db: CadenceDB) -> Callable[..., list[str]]:
    """Insert ``count`` recipients and return their ids in order."""

    def _seed(
        count: int,
        *,
        prefix: str = "r",
        email: bool = True,
        phone: bool = False,
    ) -> list[str]:
        recipients = [
            Recipient(
                recipient_id=f"{prefix}{i:05d}",
                email=f"{prefix}{i}@example.com" if email else None,
                phone=f"+1555{i:07d}" if phone else None,
                name=f"Person {i}",
            )
            for i in range(count)
        ]
        RecipientStore(db).upsert(recipients)
        return [r.recipient_id for r in recipients]

    return _seed


# =============================================================================
# Flow definitions
# =============================================================================


@pytest.fixture
def single_send_flow() -> dict[str, Any]:
    """One email, then the end."""
    return {
        "stages": [{"id": "welcome", "channel": "email", "content": "welcome"}],
        "conditions": [],
        "edges": [{"source": "welcome", "target": "end"}],
        "contents": {
            "welcome": {"subject": "Welcome {{ name }}", "body": "Hello {{ name }}"}
        },
    }


@pytest.fixture
def branching_flow() -> dict[str, Any]:
    """Email, wait a day, then thank openers and remind everyone else."""
    return {
        "stages": [
            {
                "id": "welcome",
                "channel": "email",
                "content": "welcome",
                "wait_time": 1,
                "wait_unit": "days",
            },
            {"id": "thanks", "channel": "email", "content": "thanks"},
            {"id": "reminder", "channel": "email", "content": "reminder"},
        ],
        "conditions": [
            {
                "id": "opened",
                "metric": "opened",
                "operator": "==",
                "threshold": True,
                "observation_window_hours": 24,
            }
        ],
        "edges": [
            {"source": "welcome", "target": "opened"},
            {"source": "opened", "target": "thanks", "branch": "yes"},
            {"source": "opened", "target": "reminder", "branch": "no"},
            {"source": "thanks", "target": "end"},
            {"source": "reminder", "target": "end-reminded"},
        ],
        "contents": {
            "welcome": {"subject": "Welcome {{ name }}", "body": "Hello {{ name }}"},
            "thanks": {"subject": "Thanks", "body": "<p>Thanks for reading</p>"},
            "reminder": {"subject": "Did you see this?", "body": "Reminder for {{ name }}"},
        },
    }


@pytest.fixture
def launch_flow() -> Callable[..., Any]:
    """Store a flow definition on an engine and launch it for some recipients."""

    def _launch(
        engine: CadenceEngine,
        definition: dict[str, Any],
        recipient_ids: list[str],
        *,
        flow_id: str = "campaign",
    ) -> Any:
        engine.recorder.save_flow(flow_id, flow_id.title(), definition)
        return engine.scheduler.launch(flow_id, recipient_ids)

    return _launch
