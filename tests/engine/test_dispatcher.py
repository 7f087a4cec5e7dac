# tests/engine/test_dispatcher.py
"""Tests for batch dispatch of send StageRuns."""

from datetime import timedelta
from typing import Any

import pytest


def _claimed_entry(engine: Any, execution: Any) -> tuple[Any, Any, Any]:
    """Claim the execution's entry StageRun the way the scheduler does."""
    from cadence.engine.dispatcher import dispatch_status

    [stage_run] = engine.recorder.open_stage_runs(execution.execution_id)
    status = dispatch_status(stage_run.expected_count, engine.settings.batching)
    assert engine.recorder.claim_stage_run(stage_run.stage_run_id, status)
    graph = engine.advancer.graph_for(execution)
    return stage_run, graph.node(stage_run.node_id), graph


@pytest.fixture
def chunked_engine(make_engine: Any) -> Any:
    from cadence.core.config import CadenceSettings

    return make_engine(
        CadenceSettings(batching={"large_volume_threshold": 50, "chunk_size": 20})
    )


class TestDispatchStatus:
    """Claim status by audience size."""

    def test_threshold_is_inclusive_for_direct(self) -> None:
        from cadence.contracts.enums import StageRunStatus
        from cadence.core.config import BatchingSettings
        from cadence.engine.dispatcher import dispatch_status

        settings = BatchingSettings()
        assert dispatch_status(5000, settings) is StageRunStatus.EXECUTING
        assert dispatch_status(5001, settings) is StageRunStatus.BATCHING


class TestDirectDispatch:
    """Audiences at or below the large-volume threshold."""

    def test_creates_records_and_send_tasks(
        self,
        engine: Any,
        clock: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import DispatchMode, SendStatus, TaskKind

        ids = seed_recipients(5)
        execution = launch_flow(engine, single_send_flow, ids)
        stage_run, node, graph = _claimed_entry(engine, execution)

        mode = engine.dispatcher.dispatch(stage_run, node, graph)

        assert mode is DispatchMode.DIRECT
        records = engine.recorder.list_send_records(stage_run.stage_run_id)
        assert sorted(r.recipient_id for r in records) == ids
        assert {r.status for r in records} == {SendStatus.PENDING}
        assert {r.recipient_id: r.destination for r in records}[ids[0]] == "r0@example.com"

        send_tasks = engine.queue.list_open(kind=TaskKind.SEND)
        assert len(send_tasks) == 5
        assert {t.payload["send_record_id"] for t in send_tasks} == {
            r.send_record_id for r in records
        }
        [check] = engine.queue.list_open(kind=TaskKind.CHECK_STAGE_COMPLETION)
        assert check.eligible_at == clock() + timedelta(seconds=30)

    def test_stores_unrendered_content_and_progress(
        self,
        engine: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import DispatchMode, StageRunStatus

        execution = launch_flow(engine, single_send_flow, seed_recipients(2))
        stage_run, node, graph = _claimed_entry(engine, execution)
        engine.dispatcher.dispatch(stage_run, node, graph)

        stored = engine.recorder.get_stage_run(stage_run.stage_run_id)
        assert stored.status is StageRunStatus.EXECUTING
        assert stored.mode is DispatchMode.DIRECT
        assert stored.batch_id is not None
        assert (stored.chunks_total, stored.chunks_dispatched) == (1, 1)
        assert stored.content == {
            "body": "Hello {{ name }}",
            "subject": "Welcome {{ name }}",
            "is_html": False,
        }

    def test_redispatch_does_not_duplicate_records(
        self,
        engine: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import TaskKind

        execution = launch_flow(engine, single_send_flow, seed_recipients(4))
        stage_run, node, graph = _claimed_entry(engine, execution)

        engine.dispatcher.dispatch(stage_run, node, graph)
        engine.dispatcher.dispatch(stage_run, node, graph)

        assert len(engine.recorder.list_send_records(stage_run.stage_run_id)) == 4
        assert engine.queue.count_open(kinds=(TaskKind.SEND,)) == 4

    def test_failed_record_is_reset_not_recreated(
        self,
        engine: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import SendStatus, TaskKind

        execution = launch_flow(engine, single_send_flow, seed_recipients(3))
        stage_run, node, graph = _claimed_entry(engine, execution)
        engine.dispatcher.dispatch(stage_run, node, graph)
        first = engine.recorder.list_send_records(stage_run.stage_run_id)[0]
        engine.recorder.record_send_attempt(first.send_record_id)
        engine.recorder.mark_send_failed(first.send_record_id, "boom")

        engine.dispatcher.dispatch(stage_run, node, graph)

        records = engine.recorder.list_send_records(stage_run.stage_run_id)
        assert len(records) == 3
        reset = engine.recorder.get_send_record(first.send_record_id)
        assert reset.status is SendStatus.PENDING
        assert reset.attempts == 0
        assert reset.error is None
        assert engine.queue.count_open(kinds=(TaskKind.SEND,)) == 4

    def test_recipients_without_destination_are_skipped(
        self,
        engine: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        with_email = seed_recipients(3)
        without_email = seed_recipients(2, prefix="x", email=False, phone=True)
        execution = launch_flow(engine, single_send_flow, with_email + without_email)
        stage_run, node, graph = _claimed_entry(engine, execution)

        engine.dispatcher.dispatch(stage_run, node, graph)

        records = engine.recorder.list_send_records(stage_run.stage_run_id)
        assert sorted(r.recipient_id for r in records) == with_email
        assert engine.recorder.get_stage_run(stage_run.stage_run_id).skipped_count == 2

    def test_unsubscribed_recipients_are_skipped(
        self,
        engine: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import Channel, TaskKind

        ids = seed_recipients(4, phone=True)
        engine.recipients.unsubscribe(ids[1], Channel.EMAIL)
        # An SMS opt-out does not stop email
        engine.recipients.unsubscribe(ids[2], Channel.SMS)
        execution = launch_flow(engine, single_send_flow, ids)
        stage_run, node, graph = _claimed_entry(engine, execution)

        engine.dispatcher.dispatch(stage_run, node, graph)

        records = engine.recorder.list_send_records(stage_run.stage_run_id)
        assert sorted(r.recipient_id for r in records) == [ids[0], ids[2], ids[3]]
        assert engine.recorder.get_stage_run(stage_run.stage_run_id).skipped_count == 1
        assert engine.queue.count_open(kinds=(TaskKind.SEND,)) == 3

    def test_sms_channel_uses_phone(
        self,
        engine: Any,
        seed_recipients: Any,
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import Channel

        definition = {
            "stages": [{"id": "text", "channel": "sms", "content": "t"}],
            "edges": [{"source": "text", "target": "end"}],
            "contents": {"t": {"subject": "ignored", "body": "<p>Hi {{ name }}</p>"}},
        }
        execution = launch_flow(engine, definition, seed_recipients(1, phone=True))
        stage_run, node, graph = _claimed_entry(engine, execution)
        engine.dispatcher.dispatch(stage_run, node, graph)

        [record] = engine.recorder.list_send_records(stage_run.stage_run_id)
        assert record.channel is Channel.SMS
        assert record.destination == "+15550000000"
        content = engine.recorder.get_stage_run(stage_run.stage_run_id).content
        assert content["subject"] is None
        assert content["is_html"] is False


class TestChunkedDispatch:
    """Audiences above the large-volume threshold."""

    def test_plans_chunks_without_touching_recipients(
        self,
        chunked_engine: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import DispatchMode, StageRunStatus, TaskKind

        execution = launch_flow(chunked_engine, single_send_flow, seed_recipients(55))
        stage_run, node, graph = _claimed_entry(chunked_engine, execution)

        mode = chunked_engine.dispatcher.dispatch(stage_run, node, graph)

        assert mode is DispatchMode.LARGE_VOLUME_CHUNKED
        stored = chunked_engine.recorder.get_stage_run(stage_run.stage_run_id)
        assert stored.status is StageRunStatus.BATCHING
        assert (stored.chunks_total, stored.chunks_dispatched) == (3, 0)
        assert chunked_engine.recorder.list_send_records(stage_run.stage_run_id) == []

        chunk_tasks = chunked_engine.queue.list_open(kind=TaskKind.DISPATCH_CHUNK)
        assert sorted(
            (t.payload["chunk_index"], t.payload["offset"], t.payload["limit"])
            for t in chunk_tasks
        ) == [(0, 0, 20), (1, 20, 20), (2, 40, 20)]
        assert chunked_engine.queue.count_open(kinds=(TaskKind.CHECK_STAGE_COMPLETION,)) == 1

    def test_each_chunk_dispatches_its_slice(
        self,
        chunked_engine: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        from cadence.contracts.enums import TaskStatus

        ids = seed_recipients(55)
        execution = launch_flow(chunked_engine, single_send_flow, ids)
        stage_run, node, graph = _claimed_entry(chunked_engine, execution)
        chunked_engine.dispatcher.dispatch(stage_run, node, graph)

        tasks = chunked_engine.queue.claim_due(10)
        queued = {
            task.payload["chunk_index"]: chunked_engine.dispatcher.dispatch_chunk(
                task.task_id,
                stage_run.stage_run_id,
                node,
                chunk_index=task.payload["chunk_index"],
                offset=task.payload["offset"],
                limit=task.payload["limit"],
            )
            for task in tasks
        }

        assert queued == {0: 20, 1: 20, 2: 15}
        assert chunked_engine.recorder.pending_by_chunk(stage_run.stage_run_id) == {
            0: 20,
            1: 20,
            2: 15,
        }
        assert {chunked_engine.queue.get(t.task_id).status for t in tasks} == {
            TaskStatus.DONE
        }
        stored = chunked_engine.recorder.get_stage_run(stage_run.stage_run_id)
        assert stored.chunks_dispatched == 3
        assert stored.all_chunks_dispatched

    def test_cancelled_stage_skips_chunk(
        self,
        chunked_engine: Any,
        seed_recipients: Any,
        single_send_flow: dict[str, Any],
        launch_flow: Any,
    ) -> None:
        execution = launch_flow(chunked_engine, single_send_flow, seed_recipients(55))
        stage_run, node, graph = _claimed_entry(chunked_engine, execution)
        chunked_engine.dispatcher.dispatch(stage_run, node, graph)
        chunked_engine.scheduler.cancel(execution.execution_id)

        task = chunked_engine.queue.dequeue()
        queued = chunked_engine.dispatcher.dispatch_chunk(
            task.task_id,
            stage_run.stage_run_id,
            node,
            chunk_index=0,
            offset=0,
            limit=20,
        )

        assert queued == 0
        assert chunked_engine.recorder.list_send_records(stage_run.stage_run_id) == []

    def test_unknown_stage_run(self, chunked_engine: Any) -> None:
        from cadence.contracts.enums import Channel
        from cadence.core.flow import SendNode

        with pytest.raises(KeyError):
            chunked_engine.dispatcher.dispatch_chunk(
                "t",
                "missing",
                SendNode("a", Channel.EMAIL, "c"),
                chunk_index=0,
                offset=0,
                limit=20,
            )
