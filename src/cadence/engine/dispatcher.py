# src/cadence/engine/dispatcher.py
"""Batch dispatch: turn a claimed send StageRun into per-recipient send tasks.

Small audiences are dispatched directly in one transaction. Audiences
above the large-volume threshold are split into fixed-size chunks, each
dispatched by its own queued task, so no single unit of work scales with
the audience.

Dispatch is idempotent per (recipient, StageRun): a recipient that
already has a non-failed SendRecord is skipped; a failed record is reset
and re-queued, never re-created.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Callable

from sqlalchemy import Connection

from cadence.contracts.enums import (
    Channel,
    DispatchMode,
    SendStatus,
    StageRunStatus,
    TaskKind,
)
from cadence.core.config import BatchingSettings
from cadence.core.flow import FlowGraph, SendNode
from cadence.core.logging import get_logger
from cadence.core.queue import WorkQueue
from cadence.core.store.models import Recipient, StageRun
from cadence.core.store.recipients import RecipientStore
from cadence.core.store.recorder import ExecutionRecorder
from cadence.engine.content import ContentResolver, SnapshotContentResolver

logger = get_logger(__name__)


def dispatch_status(expected_count: int, settings: BatchingSettings) -> StageRunStatus:
    """Status a send StageRun is claimed into for an audience of this size."""
    if expected_count > settings.large_volume_threshold:
        return StageRunStatus.BATCHING
    return StageRunStatus.EXECUTING


class BatchDispatcher:
    """Creates SendRecords and SEND tasks for send StageRuns.

    Example:
        dispatcher = BatchDispatcher(recorder, recipients, queue, settings.batching)
        if recorder.claim_stage_run(stage_run.stage_run_id, StageRunStatus.EXECUTING):
            dispatcher.dispatch(stage_run, node, graph)
    """

    def __init__(
        self,
        recorder: ExecutionRecorder,
        recipients: RecipientStore,
        queue: WorkQueue,
        settings: BatchingSettings,
        *,
        resolver_factory: Callable[[FlowGraph], ContentResolver] = SnapshotContentResolver,
    ) -> None:
        self._recorder = recorder
        self._recipients = recipients
        self._queue = queue
        self._settings = settings
        self._resolver_factory = resolver_factory

    @property
    def settings(self) -> BatchingSettings:
        return self._settings

    def dispatch(self, stage_run: StageRun, node: SendNode, graph: FlowGraph) -> DispatchMode:
        """Dispatch a claimed send StageRun.

        Content is resolved once here and stored on the StageRun; send tasks
        render it per recipient.

        Raises:
            GraphIntegrityError: If the node's content is missing
        """
        content = self._resolver_factory(graph).resolve(node.node_id, node.channel)
        batch_id = uuid.uuid4().hex
        count = stage_run.expected_count

        if count > self._settings.large_volume_threshold:
            self._dispatch_chunked(stage_run, content.to_dict(), batch_id)
            return DispatchMode.LARGE_VOLUME_CHUNKED

        # Reads happen before the write transaction opens
        recipient_ids = self._recipients.list_ids(stage_run.recipient_set_id, 0, count)
        recipients = self._recipients.get_many(recipient_ids)
        with self._recorder.db.connection() as conn:
            self._recorder.begin_dispatch(
                stage_run.stage_run_id,
                status=StageRunStatus.EXECUTING,
                mode=DispatchMode.DIRECT,
                batch_id=batch_id,
                content=content.to_dict(),
                chunks_total=1,
                conn=conn,
            )
            queued, skipped = self._dispatch_slice(
                stage_run, node, recipient_ids, recipients, chunk_index=0, conn=conn
            )
            self._recorder.record_chunk_dispatched(
                stage_run.stage_run_id, skipped=skipped, conn=conn
            )
            self._enqueue_completion_check(stage_run, conn=conn)

        logger.info(
            "stage_dispatched",
            execution_id=stage_run.execution_id,
            stage_run_id=stage_run.stage_run_id,
            node_id=node.node_id,
            channel=node.channel.value,
            mode=DispatchMode.DIRECT.value,
            queued=queued,
            skipped=skipped,
        )
        return DispatchMode.DIRECT

    def _dispatch_chunked(
        self, stage_run: StageRun, content: dict[str, object], batch_id: str
    ) -> None:
        size = self._settings.chunk_size
        chunks_total = math.ceil(stage_run.expected_count / size)
        payloads = [
            {
                "stage_run_id": stage_run.stage_run_id,
                "chunk_index": index,
                "offset": index * size,
                "limit": size,
            }
            for index in range(chunks_total)
        ]
        with self._recorder.db.connection() as conn:
            self._recorder.begin_dispatch(
                stage_run.stage_run_id,
                status=StageRunStatus.BATCHING,
                mode=DispatchMode.LARGE_VOLUME_CHUNKED,
                batch_id=batch_id,
                content=content,
                chunks_total=chunks_total,
                conn=conn,
            )
            self._queue.enqueue_many(
                TaskKind.DISPATCH_CHUNK,
                payloads,
                stage_run_id=stage_run.stage_run_id,
                conn=conn,
            )
            self._enqueue_completion_check(stage_run, conn=conn)

        logger.info(
            "stage_batching",
            execution_id=stage_run.execution_id,
            stage_run_id=stage_run.stage_run_id,
            node_id=stage_run.node_id,
            recipients=stage_run.expected_count,
            chunks=chunks_total,
            chunk_size=size,
        )

    def dispatch_chunk(
        self,
        task_id: str,
        stage_run_id: str,
        node: SendNode,
        *,
        chunk_index: int,
        offset: int,
        limit: int,
    ) -> int:
        """Dispatch one chunk of a large-volume StageRun.

        The chunk task is marked done in the same transaction that creates
        the chunk's records, so a committed chunk is never redelivered and
        the dispatched-chunk counter is never bumped twice.

        Returns:
            Number of send tasks queued
        """
        stage_run = self._recorder.get_stage_run(stage_run_id)
        if stage_run is None:
            raise KeyError(f"StageRun not found: {stage_run_id}")
        if stage_run.status is not StageRunStatus.BATCHING or stage_run.cancelled:
            logger.info(
                "chunk_skipped",
                stage_run_id=stage_run_id,
                chunk_index=chunk_index,
                status=stage_run.status.value,
                cancelled=stage_run.cancelled,
            )
            return 0

        recipient_ids = self._recipients.list_ids(stage_run.recipient_set_id, offset, limit)
        recipients = self._recipients.get_many(recipient_ids)
        with self._recorder.db.connection() as conn:
            queued, skipped = self._dispatch_slice(
                stage_run, node, recipient_ids, recipients, chunk_index=chunk_index, conn=conn
            )
            self._recorder.record_chunk_dispatched(stage_run_id, skipped=skipped, conn=conn)
            self._queue.complete(task_id, conn=conn)

        logger.debug(
            "chunk_dispatched",
            stage_run_id=stage_run_id,
            chunk_index=chunk_index,
            queued=queued,
            skipped=skipped,
        )
        return queued

    def _dispatch_slice(
        self,
        stage_run: StageRun,
        node: SendNode,
        recipient_ids: list[str],
        recipients: dict[str, Recipient],
        *,
        chunk_index: int,
        conn: Connection,
    ) -> tuple[int, int]:
        """Create records + SEND tasks for a slice. Returns (queued, skipped)."""
        existing = self._recorder.find_send_records(
            stage_run.stage_run_id, recipient_ids, conn=conn
        )
        payloads: list[dict[str, object]] = []
        skipped = 0
        for recipient_id in recipient_ids:
            record = existing.get(recipient_id)
            if record is not None:
                if record.status is SendStatus.FAILED and self._recorder.reset_failed_send(
                    record.send_record_id, conn=conn
                ):
                    payloads.append({"send_record_id": record.send_record_id})
                continue

            recipient = recipients.get(recipient_id)
            destination = recipient.destination(node.channel) if recipient else None
            if (
                recipient is None
                or destination is None
                or recipient.is_unsubscribed(node.channel)
            ):
                skipped += 1
                logger.warning(
                    "recipient_skipped",
                    stage_run_id=stage_run.stage_run_id,
                    recipient_id=recipient_id,
                    channel=node.channel.value,
                    reason=_skip_reason(recipient, node.channel),
                )
                continue

            send_record_id = self._recorder.create_pending_send(
                stage_run.stage_run_id,
                recipient_id,
                channel=node.channel,
                destination=destination,
                chunk_index=chunk_index,
                conn=conn,
            )
            payloads.append({"send_record_id": send_record_id})

        self._queue.enqueue_many(
            TaskKind.SEND, payloads, stage_run_id=stage_run.stage_run_id, conn=conn
        )
        return len(payloads), skipped

    def _enqueue_completion_check(self, stage_run: StageRun, *, conn: Connection) -> None:
        self._queue.enqueue(
            TaskKind.CHECK_STAGE_COMPLETION,
            {"stage_run_id": stage_run.stage_run_id},
            delay=self._settings.completion_poll_seconds,
            stage_run_id=stage_run.stage_run_id,
            conn=conn,
        )


def _skip_reason(recipient: Recipient | None, channel: Channel) -> str:
    if recipient is None:
        return "unknown recipient"
    if recipient.is_unsubscribed(channel):
        return "unsubscribed"
    return "no destination"
