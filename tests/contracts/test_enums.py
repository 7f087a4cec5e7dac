"""Tests for contracts enums."""

import pytest


class TestStoredValues:
    """Enum values are persisted; changing one breaks existing databases."""

    def test_execution_status_values(self) -> None:
        from cadence.contracts import ExecutionStatus

        assert [s.value for s in ExecutionStatus] == [
            "pending",
            "in_progress",
            "completed",
            "failed",
            "cancelled",
        ]

    def test_stage_run_status_values(self) -> None:
        from cadence.contracts import StageRunStatus

        assert {s.value for s in StageRunStatus} == {
            "pending",
            "executing",
            "batching",
            "completed",
            "failed",
        }

    def test_no_unknown_value(self) -> None:
        """Bad persisted values must crash, so no enum has a catch-all member."""
        from cadence.contracts import (
            ExecutionStatus,
            SendStatus,
            StageRunStatus,
            TaskKind,
            TaskStatus,
        )

        for enum in (ExecutionStatus, SendStatus, StageRunStatus, TaskKind, TaskStatus):
            assert "unknown" not in {member.value for member in enum}

    def test_round_trip_from_stored_string(self) -> None:
        from cadence.contracts import DispatchMode, TaskKind

        assert DispatchMode("large_volume_chunked") is DispatchMode.LARGE_VOLUME_CHUNKED
        assert TaskKind("check_stage_completion") is TaskKind.CHECK_STAGE_COMPLETION
        with pytest.raises(ValueError):
            TaskKind("dispatch_stage")


class TestDerivedProperties:
    """Helpers that classify statuses."""

    @pytest.mark.parametrize(
        ("status", "terminal"),
        [
            ("pending", False),
            ("in_progress", False),
            ("completed", True),
            ("failed", True),
            ("cancelled", True),
        ],
    )
    def test_execution_terminal(self, status: str, terminal: bool) -> None:
        from cadence.contracts import ExecutionStatus

        assert ExecutionStatus(status).is_terminal is terminal

    def test_active_stage_statuses(self) -> None:
        from cadence.contracts import StageRunStatus

        active = {s for s in StageRunStatus if s.is_active}

        assert active == {StageRunStatus.EXECUTING, StageRunStatus.BATCHING}

    def test_only_pending_sends_are_not_terminal(self) -> None:
        from cadence.contracts import SendStatus

        assert [s for s in SendStatus if not s.is_terminal] == [SendStatus.PENDING]


class TestMetricAliases:
    """Condition metric names accepted in flow definitions."""

    @pytest.mark.parametrize(
        ("alias", "metric"),
        [
            ("views", "opened"),
            ("email_opened", "opened"),
            ("clicks", "clicked"),
            ("email_bounced", "bounced"),
            ("total_opens", "open_count"),
            ("total_clicks", "click_count"),
        ],
    )
    def test_alias_maps_to_canonical_metric(self, alias: str, metric: str) -> None:
        from cadence.contracts.enums import METRIC_ALIASES, Metric

        assert METRIC_ALIASES[alias] is Metric(metric)

    def test_every_metric_is_its_own_alias(self) -> None:
        from cadence.contracts.enums import METRIC_ALIASES, Metric

        for metric in Metric:
            assert METRIC_ALIASES[metric.value] is metric
