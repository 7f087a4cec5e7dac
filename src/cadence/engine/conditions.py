# src/cadence/engine/conditions.py
"""Condition evaluation: split a StageRun's recipients into yes/no branches.

Each recipient is judged on its *own* SendRecord from the upstream send
StageRun, never on a flow-wide aggregate. A recipient with no record is
placed in ``no`` (fail-closed).
"""

from __future__ import annotations

from collections import Counter
from typing import Any

from cadence.contracts.enums import Metric, SendStatus
from cadence.core.flow import ConditionNode
from cadence.core.logging import get_logger
from cadence.core.store.models import ConditionResult, SendRecord, StageRun
from cadence.core.store.recipients import RecipientStore
from cadence.core.store.recorder import ExecutionRecorder

logger = get_logger(__name__)


def metric_value(record: SendRecord, metric: Metric) -> int:
    """Read one engagement metric off a SendRecord as an integer.

    Booleans are 0/1. Status counts as evidence too: a record promoted to
    ``clicked`` has been opened even if no open timestamp was captured.
    """
    if metric is Metric.OPENED:
        return int(
            record.opened_at is not None
            or record.status in (SendStatus.OPENED, SendStatus.CLICKED)
        )
    if metric is Metric.CLICKED:
        return int(record.clicked_at is not None or record.status is SendStatus.CLICKED)
    if metric is Metric.BOUNCED:
        return int(record.bounced)
    if metric is Metric.OPEN_COUNT:
        return record.open_count
    if metric is Metric.CLICK_COUNT:
        return record.click_count
    raise ValueError(f"Unsupported metric: {metric!r}")


class ConditionEvaluator:
    """Classifies a condition StageRun's recipients and persists the split.

    Recipients are read page by page from the StageRun's recipient set and
    appended to two new sets, so memory stays bounded for large audiences.
    Evaluation is idempotent per StageRun: if a ConditionResult already
    exists it is returned unchanged.

    Example:
        evaluator = ConditionEvaluator(recorder, recipients)
        result = evaluator.evaluate(stage_run, node)
        result.yes_count + result.no_count == result.evaluated_count
    """

    def __init__(
        self,
        recorder: ExecutionRecorder,
        recipients: RecipientStore,
        *,
        page_size: int = 1000,
    ) -> None:
        self._recorder = recorder
        self._recipients = recipients
        self._page_size = page_size

    def evaluate(self, stage_run: StageRun, node: ConditionNode) -> ConditionResult:
        existing = self._recorder.get_condition_result(stage_run.stage_run_id)
        if existing is not None:
            return existing

        source_id = stage_run.source_stage_run_id
        yes_set_id, _ = self._recipients.create_set([])
        no_set_id, _ = self._recipients.create_set([])
        yes_count = no_count = no_record_count = 0
        values: Counter[int] = Counter()

        for page in self._recipients.iter_pages(stage_run.recipient_set_id, self._page_size):
            records = (
                self._recorder.find_send_records(source_id, page) if source_id else {}
            )
            yes_page: list[str] = []
            no_page: list[str] = []
            for recipient_id in page:
                record = records.get(recipient_id)
                if record is None:
                    no_record_count += 1
                    no_page.append(recipient_id)
                    continue
                value = metric_value(record, node.metric)
                values[value] += 1
                if node.matches(value):
                    yes_page.append(recipient_id)
                else:
                    no_page.append(recipient_id)

            self._recipients.append_to_set(yes_set_id, yes_page, start=yes_count)
            self._recipients.append_to_set(no_set_id, no_page, start=no_count)
            yes_count += len(yes_page)
            no_count += len(no_page)

        snapshot: dict[str, Any] = {
            "metric": node.metric.value,
            "operator": node.operator,
            "threshold": node.threshold,
            "source_stage_run_id": source_id,
            "value_counts": {str(v): n for v, n in sorted(values.items())},
        }
        result = self._recorder.record_condition_result(
            stage_run.stage_run_id,
            yes_set_id=yes_set_id,
            no_set_id=no_set_id,
            evaluated_count=yes_count + no_count,
            yes_count=yes_count,
            no_count=no_count,
            no_record_count=no_record_count,
            metric_snapshot=snapshot,
        )
        logger.info(
            "condition_evaluated",
            execution_id=stage_run.execution_id,
            node_id=node.node_id,
            metric=node.metric.value,
            yes=yes_count,
            no=no_count,
            no_record=no_record_count,
        )
        return result
