"""Scan Engine Stuck Request Sweep — scheduled detector for requests that never finish.

A request can stop short of DONE when a worker message is lost, a worker
keeps failing, or a merge trigger dead-letters. Nothing in the normal flow
notices that, so this Lambda runs on a schedule and:

  - scans orchestration records whose finalStatus is not DONE
  - treats a record older than STUCK_REQUEST_AFTER_SECONDS as stuck
  - annotates each stuck record once with stuckDetectedAt
  - logs a WARNING per newly stuck record, naming the workers still IN_PROGRESS
  - publishes one SNS summary per run when STUCK_ALERT_TOPIC_ARN is set
  - re-sends a merge trigger for records stuck in MERGING
    (STUCK_SWEEP_REDRIVE_MERGING, default true)

Architecture:
  EventBridge schedule -> This Lambda -> DynamoDB (scan + annotate)
  This Lambda -> SNS (stuck request alerts), SQS (merge re-drive)

PENDING records are only annotated; lost worker messages need an operator.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any, Dict, List, Optional

from scan_engine_shared import config
from scan_engine_shared.aws_clients import _get_ddb, _get_sns, _get_sqs
from scan_engine_shared.merge_trigger import MergeTrigger
from scan_engine_shared.models import FinalStatus, OrchestrationRecord, StoreResult
from scan_engine_shared.queues import SqsQueue
from scan_engine_shared.serialization import _now, _now_z, _parse_z
from scan_engine_shared.store import FINAL_STATUS, Absent, DiffersOrAbsent, DynamoDbOrchestrationStore

logger = logging.getLogger()
logger.setLevel(logging.INFO)

STUCK_DETECTED_AT = ("stuckDetectedAt",)


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def is_stuck(record: OrchestrationRecord, now: dt.datetime, threshold_seconds: int) -> bool:
    if record.final_status == FinalStatus.DONE:
        return False
    created = _parse_z(record.created_at)
    if created is None:
        # Records without createdAt cannot be aged.
        return False
    return (now - created).total_seconds() > threshold_seconds


def _annotate(store, record: OrchestrationRecord, detected_at: str) -> bool:
    """Mark the record stuck; False when it was already marked or has finished."""
    result = store.conditional_update(
        record.request_id,
        {STUCK_DETECTED_AT: detected_at},
        [Absent(STUCK_DETECTED_AT), DiffersOrAbsent(FINAL_STATUS, FinalStatus.DONE.value)],
    )
    return result == StoreResult.OK


def _summary_entry(record: OrchestrationRecord) -> Dict[str, Any]:
    return {
        "requestId": record.request_id,
        "finalStatus": record.final_status.value,
        "createdAt": record.created_at,
        "pendingWorkers": record.pending_workers(),
    }


def _publish_alert(topic_arn: str, stuck: List[Dict[str, Any]], detected_at: str) -> None:
    """Publish one stuck-request summary to SNS. Failures are logged only."""
    alert = {
        "alert_type": "SCAN_REQUEST_STUCK",
        "count": len(stuck),
        "requests": stuck,
        "detected_at": detected_at,
    }
    subject = f"[ALERT] {len(stuck)} scan request(s) stuck"
    try:
        _get_sns().publish(
            TopicArn=topic_arn,
            Subject=subject[:100],
            Message=json.dumps(alert, indent=2),
            MessageAttributes={
                "alert_type": {
                    "DataType": "String",
                    "StringValue": "SCAN_REQUEST_STUCK",
                },
            },
        )
        logger.info("[ALERT] Stuck request alert published: %d request(s)", len(stuck))
    except Exception as exc:
        logger.error("[ERROR] Failed to publish SNS alert: %s", exc)


def sweep(
    store,
    now: dt.datetime,
    *,
    threshold_seconds: int,
    trigger: Optional[MergeTrigger] = None,
    topic_arn: str = "",
) -> Dict[str, Any]:
    """Run one sweep over unfinished records and return a summary."""
    detected_at = _now_z(now)
    scanned = 0
    newly_stuck: List[Dict[str, Any]] = []
    redriven = 0

    for record in store.scan_unfinished():
        scanned += 1
        if not is_stuck(record, now, threshold_seconds):
            continue

        if record.stuck_detected_at is None and _annotate(store, record, detected_at):
            entry = _summary_entry(record)
            newly_stuck.append(entry)
            logger.warning(
                "[STUCK] requestId=%s finalStatus=%s createdAt=%s pendingWorkers=%s",
                record.request_id,
                record.final_status.value,
                record.created_at,
                ",".join(entry["pendingWorkers"]) or "-",
            )

        if record.final_status == FinalStatus.MERGING and trigger is not None:
            try:
                trigger.send(record.request_id)
                redriven += 1
                logger.info("[REDRIVE] Merge trigger re-sent. requestId=%s", record.request_id)
            except Exception as exc:
                logger.error("[ERROR] Failed to re-send merge trigger for %s: %s", record.request_id, exc)

    if newly_stuck and topic_arn:
        _publish_alert(topic_arn, newly_stuck, detected_at)

    return {
        "scanned": scanned,
        "stuck": len(newly_stuck),
        "redriven": redriven,
    }


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Any, context: Any) -> Dict[str, Any]:
    """Scheduled entry point; the event content is ignored."""
    store = DynamoDbOrchestrationStore(_get_ddb(), config.ORCHESTRATION_TABLE)

    trigger = None
    if config.STUCK_SWEEP_REDRIVE_MERGING:
        if config.MERGE_QUEUE_URL:
            trigger = MergeTrigger(store, SqsQueue(_get_sqs(), config.MERGE_QUEUE_URL), config.EXPECTED_WORKERS)
        else:
            logger.warning("[WARNING] MERGE_QUEUE_URL not set; MERGING re-drive disabled")

    result = sweep(
        store,
        _now(),
        threshold_seconds=config.STUCK_REQUEST_AFTER_SECONDS,
        trigger=trigger,
        topic_arn=config.STUCK_ALERT_TOPIC_ARN,
    )
    logger.info("[END] Stuck request sweep: %s", json.dumps(result))
    return result
