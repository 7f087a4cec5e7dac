# src/cadence/engine/sender.py
"""Send task handler: deliver one SendRecord through the channel gate.

Outcomes of one attempt:

- record no longer pending: no-op (duplicate delivery of the task)
- stage or execution cancelled: record failed as cancelled, no send
- recipient unsubscribed from the channel: record failed before the gate
- gate refuses (``RateLimited`` / ``CircuitOpen``): signal propagates,
  the worker re-queues the task with the signal's delay
- permanent transport error: record failed, circuit untouched
- transient error or timeout: circuit failure counted; re-queued with
  exponential backoff until the attempt ceiling, then record failed
- success: record sent, circuit success counted
"""

from __future__ import annotations

from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

from cadence.contracts.enums import Channel, SendStatus
from cadence.contracts.errors import (
    PermanentTransportError,
    RetryLater,
    SendTimeout,
    TransientTransportError,
)
from cadence.core.config import RetrySettings
from cadence.core.gate import ChannelGate
from cadence.core.logging import get_logger
from cadence.core.store.models import Recipient
from cadence.core.store.recipients import RecipientStore
from cadence.core.store.recorder import ExecutionRecorder
from cadence.engine.content import Content, ContentRenderer, TemplateError
from cadence.engine.gateway import MessageSender, SendResult

logger = get_logger(__name__)


class SendTaskHandler:
    """Executes SEND tasks.

    Transport calls run on a small thread pool so each can be bounded by
    ``send_timeout_seconds``. A timed-out call is abandoned, not killed; the
    provider may still deliver it, which at-least-once delivery allows.
    """

    def __init__(
        self,
        recorder: ExecutionRecorder,
        recipients: RecipientStore,
        gate: ChannelGate,
        senders: Mapping[Channel, MessageSender],
        retry: RetrySettings,
        *,
        renderer: ContentRenderer | None = None,
        max_workers: int = 4,
    ) -> None:
        self._recorder = recorder
        self._recipients = recipients
        self._gate = gate
        self._senders = dict(senders)
        self._retry = retry
        self._renderer = renderer or ContentRenderer()
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="cadence-send"
        )

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def handle(self, send_record_id: str) -> SendStatus:
        """Attempt one send. Returns the record's status afterwards.

        Raises:
            RateLimited: Channel window exhausted (re-queue)
            CircuitOpen: Channel cooling down (re-queue)
            RetryLater: Transient failure below the attempt ceiling (re-queue)
        """
        record = self._recorder.get_send_record(send_record_id)
        if record is None:
            raise KeyError(f"SendRecord not found: {send_record_id}")
        if record.status is not SendStatus.PENDING:
            return record.status

        log = logger.bind(
            send_record_id=send_record_id,
            stage_run_id=record.stage_run_id,
            recipient_id=record.recipient_id,
            channel=record.channel.value,
        )

        stage_run = self._recorder.get_stage_run(record.stage_run_id)
        execution = (
            self._recorder.get_execution(stage_run.execution_id) if stage_run else None
        )
        if (
            stage_run is None
            or execution is None
            or stage_run.cancelled
            or not stage_run.status.is_active
            or execution.status.is_terminal
        ):
            self._recorder.mark_send_failed(send_record_id, "cancelled")
            log.info("send_cancelled")
            return SendStatus.FAILED

        recipient = self._recipients.get(record.recipient_id)
        if recipient is None:
            self._recorder.mark_send_failed(send_record_id, "recipient not found")
            log.warning("send_failed", error="recipient not found")
            return SendStatus.FAILED
        # Opt-outs recorded after dispatch still stop the send
        if recipient.is_unsubscribed(record.channel):
            self._recorder.mark_send_failed(send_record_id, "unsubscribed")
            log.info("send_suppressed", reason="unsubscribed")
            return SendStatus.FAILED

        channel = record.channel.value
        self._gate.acquire(channel)

        try:
            content = self._renderer.render(Content.from_dict(stage_run.content or {}), recipient)
        except (TemplateError, KeyError) as e:
            self._recorder.mark_send_failed(send_record_id, f"content error: {e}")
            log.warning("send_failed", error=str(e))
            return SendStatus.FAILED

        attempt = self._recorder.record_send_attempt(send_record_id)
        try:
            result = self._send(record.channel, recipient, content)
        except PermanentTransportError as e:
            self._recorder.mark_send_failed(send_record_id, str(e))
            log.warning("send_failed", error=str(e), permanent=True, attempt=attempt)
            return SendStatus.FAILED
        except TransientTransportError as e:
            self._gate.record_failure(channel)
            if attempt >= self._retry.max_attempts:
                self._recorder.mark_send_failed(send_record_id, str(e))
                log.warning("send_failed", error=str(e), attempt=attempt, exhausted=True)
                return SendStatus.FAILED
            delay = self._retry.backoff(attempt)
            log.info("send_retry_scheduled", error=str(e), attempt=attempt, delay=delay)
            raise RetryLater(channel, delay, attempt, e.detail) from e

        self._gate.record_success(channel)
        self._recorder.mark_sent(send_record_id, result.provider_message_id)
        log.debug("send_succeeded", provider_message_id=result.provider_message_id)
        return SendStatus.SENT

    def _send(self, channel: Channel, recipient: Recipient, content: Content) -> SendResult:
        sender = self._senders.get(channel)
        if sender is None:
            raise PermanentTransportError(channel.value, "no transport configured")

        timeout = self._retry.send_timeout_seconds
        future = self._pool.submit(sender.send, recipient, content)
        try:
            result = future.result(timeout=timeout)
        except FutureTimeout as e:
            future.cancel()
            raise SendTimeout(channel.value, timeout) from e

        if not result.success:
            raise TransientTransportError(
                channel.value, result.error or "provider reported failure"
            )
        return result
