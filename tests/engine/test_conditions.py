# tests/engine/test_conditions.py
"""Tests for condition evaluation (per-recipient yes/no split)."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest
from hypothesis import given
from hypothesis import strategies as st

_START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _condition_stage(
    db: Any,
    clock: Callable[[], datetime],
    engagement: list[int | None],
    *,
    bounced: frozenset[int] = frozenset(),
) -> tuple[Any, Any, Any, list[str]]:
    """Build a sent stage whose i-th recipient opened ``engagement[i]`` times.

    ``None`` means the recipient has no SendRecord at all.

    Returns:
        (recorder, recipient store, pending condition StageRun, recipient ids)
    """
    from cadence.contracts.enums import Channel, NodeKind, StageRunStatus
    from cadence.core.store.models import Recipient
    from cadence.core.store.recipients import RecipientStore
    from cadence.core.store.recorder import ExecutionRecorder

    recorder = ExecutionRecorder(db, clock=clock)
    store = RecipientStore(db)
    ids = [f"r{i:04d}" for i in range(len(engagement))]
    store.upsert(Recipient(rid, email=f"{rid}@example.com") for rid in ids)
    set_id, count = store.create_set(ids)

    flow = recorder.save_flow(
        "f",
        "F",
        {
            "stages": [{"id": "a", "channel": "email", "content": "c"}],
            "conditions": [
                {"id": "check", "metric": "opened", "operator": "==", "threshold": 1}
            ],
            "edges": [
                {"source": "a", "target": "check"},
                {"source": "check", "target": "end", "branch": "yes"},
            ],
            "contents": {"c": {"body": "x"}},
        },
    )
    execution = recorder.create_execution(flow, set_id, count)
    send_stage = recorder.schedule_stage_run(
        execution.execution_id,
        "a",
        NodeKind.SEND,
        origin="entry",
        recipient_set_id=set_id,
        expected_count=count,
        scheduled_at=clock(),
    )
    recorder.claim_stage_run(send_stage.stage_run_id, StageRunStatus.EXECUTING)

    with db.connection() as conn:
        record_ids = {
            rid: recorder.create_pending_send(
                send_stage.stage_run_id,
                rid,
                channel=Channel.EMAIL,
                destination=f"{rid}@example.com",
                chunk_index=0,
                conn=conn,
            )
            for rid, opens in zip(ids, engagement, strict=True)
            if opens is not None
        }
    for index, (rid, opens) in enumerate(zip(ids, engagement, strict=True)):
        if opens is None:
            continue
        recorder.mark_sent(record_ids[rid], None)
        for _ in range(opens):
            recorder.record_open(record_ids[rid])
        if index in bounced:
            recorder.record_bounce(record_ids[rid])
    recorder.complete_stage_run(send_stage.stage_run_id)

    condition_stage = recorder.schedule_stage_run(
        execution.execution_id,
        "check",
        NodeKind.CONDITION,
        origin=f"{send_stage.stage_run_id}:next",
        recipient_set_id=set_id,
        expected_count=count,
        scheduled_at=clock(),
        source_stage_run_id=send_stage.stage_run_id,
    )
    return recorder, store, condition_stage, ids


def _node(metric: str = "opened", operator: str = "==", threshold: int = 1) -> Any:
    from cadence.contracts.enums import METRIC_ALIASES
    from cadence.core.flow import ConditionNode

    return ConditionNode("check", METRIC_ALIASES[metric], operator, threshold)


class TestMetricValue:
    """Reading metrics off a SendRecord."""

    def _record(self, **fields: Any) -> Any:
        from cadence.contracts.enums import Channel, SendStatus
        from cadence.core.store.models import SendRecord

        values: dict[str, Any] = {
            "send_record_id": "s",
            "stage_run_id": "sr",
            "recipient_id": "r",
            "channel": Channel.EMAIL,
            "destination": "r@example.com",
            "status": SendStatus.SENT,
            "created_at": _START,
            "updated_at": _START,
        }
        values.update(fields)
        return SendRecord(**values)

    def test_opened_from_timestamp_or_status(self) -> None:
        from cadence.contracts.enums import Metric, SendStatus
        from cadence.engine.conditions import metric_value

        assert metric_value(self._record(), Metric.OPENED) == 0
        assert metric_value(self._record(opened_at=_START), Metric.OPENED) == 1
        assert metric_value(self._record(status=SendStatus.CLICKED), Metric.OPENED) == 1

    def test_clicked(self) -> None:
        from cadence.contracts.enums import Metric, SendStatus
        from cadence.engine.conditions import metric_value

        assert metric_value(self._record(status=SendStatus.OPENED), Metric.CLICKED) == 0
        assert metric_value(self._record(status=SendStatus.CLICKED), Metric.CLICKED) == 1

    def test_counts_and_bounce(self) -> None:
        from cadence.contracts.enums import Metric
        from cadence.engine.conditions import metric_value

        record = self._record(open_count=4, click_count=2, bounced=True)
        assert metric_value(record, Metric.OPEN_COUNT) == 4
        assert metric_value(record, Metric.CLICK_COUNT) == 2
        assert metric_value(record, Metric.BOUNCED) == 1


class TestConditionEvaluator:
    """Splitting recipients by their own send record."""

    def test_splits_by_each_recipients_record(self, db: Any, clock: Any) -> None:
        from cadence.engine.conditions import ConditionEvaluator

        recorder, store, stage_run, ids = _condition_stage(db, clock, [1, 0, 2, 0])
        result = ConditionEvaluator(recorder, store).evaluate(stage_run, _node())

        assert store.list_ids(result.yes_set_id, 0, 10) == [ids[0], ids[2]]
        assert store.list_ids(result.no_set_id, 0, 10) == [ids[1], ids[3]]
        assert (result.yes_count, result.no_count, result.evaluated_count) == (2, 2, 4)

    def test_missing_record_goes_to_no(self, db: Any, clock: Any) -> None:
        from cadence.engine.conditions import ConditionEvaluator

        recorder, store, stage_run, ids = _condition_stage(db, clock, [1, None, 1])
        result = ConditionEvaluator(recorder, store).evaluate(stage_run, _node())

        assert store.list_ids(result.no_set_id, 0, 10) == [ids[1]]
        assert result.no_record_count == 1

    def test_missing_record_is_no_even_for_negated_condition(
        self, db: Any, clock: Any
    ) -> None:
        """"Did not open" must not select recipients who were never sent to."""
        from cadence.engine.conditions import ConditionEvaluator

        recorder, store, stage_run, ids = _condition_stage(db, clock, [0, None])
        result = ConditionEvaluator(recorder, store).evaluate(
            stage_run, _node(operator="==", threshold=0)
        )

        assert store.list_ids(result.yes_set_id, 0, 10) == [ids[0]]
        assert store.list_ids(result.no_set_id, 0, 10) == [ids[1]]

    def test_count_metric_threshold(self, db: Any, clock: Any) -> None:
        from cadence.engine.conditions import ConditionEvaluator

        recorder, store, stage_run, ids = _condition_stage(db, clock, [0, 1, 2, 3])
        result = ConditionEvaluator(recorder, store).evaluate(
            stage_run, _node(metric="total_opens", operator=">=", threshold=2)
        )

        assert store.list_ids(result.yes_set_id, 0, 10) == ids[2:]
        assert result.metric_snapshot["value_counts"] == {"0": 1, "1": 1, "2": 1, "3": 1}

    def test_bounced_metric(self, db: Any, clock: Any) -> None:
        from cadence.engine.conditions import ConditionEvaluator

        recorder, store, stage_run, ids = _condition_stage(
            db, clock, [0, 0, 0], bounced=frozenset({1})
        )
        result = ConditionEvaluator(recorder, store).evaluate(
            stage_run, _node(metric="bounced", operator="==", threshold=1)
        )

        assert store.list_ids(result.yes_set_id, 0, 10) == [ids[1]]

    def test_pages_through_large_sets(self, db: Any, clock: Any) -> None:
        from cadence.engine.conditions import ConditionEvaluator

        engagement = [i % 2 for i in range(25)]
        recorder, store, stage_run, ids = _condition_stage(db, clock, engagement)
        result = ConditionEvaluator(recorder, store, page_size=4).evaluate(
            stage_run, _node()
        )

        assert store.list_ids(result.yes_set_id, 0, 100) == ids[1::2]
        assert store.list_ids(result.no_set_id, 0, 100) == ids[0::2]

    def test_evaluation_is_idempotent(self, db: Any, clock: Any) -> None:
        from cadence.engine.conditions import ConditionEvaluator

        recorder, store, stage_run, _ = _condition_stage(db, clock, [1, 0])
        evaluator = ConditionEvaluator(recorder, store)
        first = evaluator.evaluate(stage_run, _node())
        second = evaluator.evaluate(stage_run, _node())

        assert second.condition_result_id == first.condition_result_id
        stored = recorder.get_condition_result(stage_run.stage_run_id)
        assert stored is not None
        assert (stored.yes_set_id, stored.yes_count) == (first.yes_set_id, first.yes_count)

    def test_snapshot_records_source(self, db: Any, clock: Any) -> None:
        from cadence.engine.conditions import ConditionEvaluator

        recorder, store, stage_run, _ = _condition_stage(db, clock, [1])
        result = ConditionEvaluator(recorder, store).evaluate(stage_run, _node())

        assert result.metric_snapshot["metric"] == "opened"
        assert result.metric_snapshot["source_stage_run_id"] == stage_run.source_stage_run_id


class TestBranchCompleteness:
    """Every evaluated recipient lands in exactly one branch."""

    @given(
        engagement=st.lists(
            st.one_of(st.none(), st.integers(min_value=0, max_value=3)), max_size=30
        ),
        operator=st.sampled_from([">", ">=", "==", "!=", "<", "<="]),
        threshold=st.integers(min_value=0, max_value=3),
        page_size=st.integers(min_value=1, max_value=7),
    )
    def test_branches_partition_the_audience(
        self, engagement: list[int | None], operator: str, threshold: int, page_size: int
    ) -> None:
        from cadence.core.store.database import CadenceDB
        from cadence.engine.conditions import ConditionEvaluator

        with CadenceDB.in_memory() as db:
            recorder, store, stage_run, ids = _condition_stage(
                db, lambda: _START, engagement
            )
            node = _node(metric="open_count", operator=operator, threshold=threshold)
            result = ConditionEvaluator(recorder, store, page_size=page_size).evaluate(
                stage_run, node
            )

            yes = store.list_ids(result.yes_set_id, 0, 100)
            no = store.list_ids(result.no_set_id, 0, 100)
            assert set(yes).isdisjoint(no)
            assert sorted(yes + no) == sorted(ids)
            assert result.evaluated_count == len(ids) == result.yes_count + result.no_count
            for rid, opens in zip(ids, engagement, strict=True):
                if opens is None:
                    assert rid in no
                else:
                    assert (rid in yes) == node.matches(opens)


@pytest.mark.parametrize("page_size", [1, 1000])
def test_empty_audience(db: Any, clock: Any, page_size: int) -> None:
    from cadence.engine.conditions import ConditionEvaluator

    recorder, store, stage_run, _ = _condition_stage(db, clock, [])
    result = ConditionEvaluator(recorder, store, page_size=page_size).evaluate(
        stage_run, _node()
    )

    assert (result.yes_count, result.no_count, result.evaluated_count) == (0, 0, 0)
