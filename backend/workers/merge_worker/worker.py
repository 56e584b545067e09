#!/usr/bin/env python3
"""merge_worker/worker.py — Merge coordinator for completed scans.

Consumes merge-trigger messages ({"requestId": ...}) sent by the engine worker
that won the PENDING → MERGING transition. For each trigger:

    1. reads the orchestration record (DONE → acknowledge, nothing rewritten)
    2. re-claims PENDING records (a trigger redelivered after a release)
    3. fixes mergedAt once on the record (first delivery wins)
    4. reads every configured worker's output from S3 and writes {"requestId", "mergedAt", "items"} to {requestId}.json
    5. finalizes: finalStatus = DONE, mergedKey, only if MERGING

The trigger message is deleted once step 1, 2 or 5 yields an outcome. A
MergeError leaves it on the queue for redelivery (and eventually the DLQ).

Environment variables:
    MERGE_QUEUE_URL        required
    MERGED_BUCKET          default: scan-engine-orchestrated
    WORKER_BUCKETS         JSON object worker -> bucket (default PAYLOAD_BUCKET)
    ORCHESTRATION_TABLE    default: scan-orchestration
    EXPECTED_WORKERS       default: service-a,service-b
    MERGE_IDLE_SLEEP_SECONDS  default: 40

Usage:
    MERGE_QUEUE_URL=... python3 backend/workers/merge_worker/worker.py
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping

from scan_engine_shared import config
from scan_engine_shared.models import (
    FinalStatus,
    InvalidMessage,
    MergeError,
    MergeTriggerMessage,
    StoreResult,
)
from scan_engine_shared.queues import QueueMessage
from scan_engine_shared.serialization import _now, _now_z
from scan_engine_shared.store import FINAL_STATUS, Absent, Equals

logger = logging.getLogger("merge_worker")

MERGED_AT = ("mergedAt",)


class MergeOutcome(str, Enum):
    MERGED = "MERGED"
    ALREADY_DONE = "ALREADY_DONE"
    SKIPPED = "SKIPPED"


def merged_key(request_id: str) -> str:
    return f"{request_id}.json"


class MergeCoordinator:
    def __init__(
        self,
        queue,
        store,
        blobs,
        worker_buckets: Mapping[str, str],
        merged_bucket: str,
        expected_workers: Iterable[str],
        trigger,
        *,
        idle_sleep: float = 40.0,
        poll_error_backoff: float = 5.0,
        clock=_now,
    ):
        if not merged_bucket:
            raise ValueError("Merged bucket is required")
        self.queue = queue
        self.store = store
        self.blobs = blobs
        self.worker_buckets = dict(worker_buckets)
        self.merged_bucket = merged_bucket
        self.expected_workers = tuple(sorted(set(expected_workers)))
        self.trigger = trigger
        self.idle_sleep = idle_sleep
        self.poll_error_backoff = poll_error_backoff
        self._clock = clock

    # -- loop -----------------------------------------------------------------

    def run(self, stop_event: threading.Event) -> None:
        logger.info(
            "Started merge coordinator. queue=%s workers=%s",
            self.queue.queue_url,
            ",".join(self.expected_workers),
        )
        while not stop_event.is_set():
            try:
                messages = self.queue.receive()
            except Exception:
                logger.error("Failed to poll merge queue", exc_info=True)
                stop_event.wait(self.poll_error_backoff)
                continue
            if not messages:
                stop_event.wait(self.idle_sleep)
                continue
            for message in messages:
                self.handle_message(message)
        logger.info("Merge coordinator stopped")

    def poll_once(self) -> int:
        """Receive one batch and handle it; returns the number acknowledged."""
        return sum(1 for message in self.queue.receive() if self.handle_message(message))

    def handle_message(self, message: QueueMessage) -> bool:
        try:
            trigger_message = MergeTriggerMessage.from_json(message.body)
        except InvalidMessage as exc:
            logger.warning("Rejected merge trigger. messageId=%s reason=%s", message.message_id, exc)
            return False

        request_id = trigger_message.request_id
        try:
            outcome = self.merge(request_id)
            self.queue.delete(message)
        except MergeError as exc:
            logger.warning("Merge not possible yet. requestId=%s reason=%s", request_id, exc)
            return False
        except Exception:
            logger.error("Failed to merge. requestId=%s messageId=%s", request_id, message.message_id, exc_info=True)
            return False

        logger.info("Merge trigger handled. requestId=%s outcome=%s", request_id, outcome.value)
        return True

    # -- merge ----------------------------------------------------------------

    def merge(self, request_id: str) -> MergeOutcome:
        record = self.store.get_record(request_id)
        if record is None:
            raise MergeError(f"No orchestration record for requestId={request_id}")

        if record.final_status == FinalStatus.DONE:
            logger.info("Merge already finalized. requestId=%s mergedKey=%s", request_id, record.merged_key)
            return MergeOutcome.ALREADY_DONE

        if record.final_status == FinalStatus.PENDING and not self.trigger.claim(request_id):
            logger.info("Merge trigger for unclaimable request skipped. requestId=%s", request_id)
            return MergeOutcome.SKIPPED

        missing = [name for name in self.expected_workers if not record.outputs.get(name)]
        if missing:
            raise MergeError(f"Missing output for worker(s) {', '.join(missing)}. requestId={request_id}")

        record = self._stamp_merged_at(request_id)
        if record.final_status == FinalStatus.DONE:
            logger.info("Merge finalized by another delivery. requestId=%s", request_id)
            return MergeOutcome.ALREADY_DONE

        items = self._load_outputs(request_id, record.outputs)
        merged_at = record.merged_at
        key = merged_key(request_id)
        self.blobs.put_json(
            self.merged_bucket,
            key,
            {"requestId": request_id, "mergedAt": merged_at, "items": items},
        )

        result = self.store.conditional_update(
            request_id,
            {
                FINAL_STATUS: FinalStatus.DONE.value,
                ("mergedKey",): key,
                MERGED_AT: merged_at,
            },
            [Equals(FINAL_STATUS, FinalStatus.MERGING.value)],
        )
        if result != StoreResult.OK:
            logger.info("Finalize rejected; another merge won. requestId=%s result=%s", request_id, result.value)
            return MergeOutcome.ALREADY_DONE

        logger.info("Merged requestId=%s key=%s items=%d", request_id, key, len(items))
        return MergeOutcome.MERGED

    def _stamp_merged_at(self, request_id: str):
        """Fix mergedAt once per request and return the re-read record.

        Every delivery that merges the same request builds its blob from the
        stored value, so overlapping merges write identical documents.
        """
        self.store.conditional_update(
            request_id,
            {MERGED_AT: _now_z(self._clock())},
            [Equals(FINAL_STATUS, FinalStatus.MERGING.value), Absent(MERGED_AT)],
        )
        record = self.store.get_record(request_id)
        if record is None:
            raise MergeError(f"No orchestration record for requestId={request_id}")
        if record.final_status != FinalStatus.DONE and not record.merged_at:
            raise MergeError(f"Merge is no longer claimed. requestId={request_id} finalStatus={record.final_status.value}")
        missing = [name for name in self.expected_workers if not record.outputs.get(name)]
        if missing and record.final_status != FinalStatus.DONE:
            raise MergeError(f"Missing output for worker(s) {', '.join(missing)}. requestId={request_id}")
        return record

    def _load_outputs(self, request_id: str, outputs: Dict[str, str]) -> List[Any]:
        items = []
        for name in self.expected_workers:
            bucket = self.worker_buckets.get(name)
            if not bucket:
                raise MergeError(f"No bucket configured for worker '{name}'")
            document = self.blobs.get_json(bucket, outputs[name])
            if document is None:
                raise MergeError(f"Output missing for worker '{name}': s3://{bucket}/{outputs[name]}")
            items.append(document)
        return items


# ---------------------------------------------------------------------------
# Process entry point
# ---------------------------------------------------------------------------


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _stop(signum, _frame):
        logger.info("Received signal %s; stopping after current iteration", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)


def build_coordinator(merge_queue_url: str, merged_bucket: str) -> MergeCoordinator:
    from scan_engine_shared.aws_clients import _get_ddb, _get_s3, _get_sqs
    from scan_engine_shared.blob import S3BlobStore
    from scan_engine_shared.merge_trigger import MergeTrigger
    from scan_engine_shared.queues import SqsQueue
    from scan_engine_shared.store import DynamoDbOrchestrationStore

    if not merge_queue_url:
        raise ValueError("MERGE_QUEUE_URL is required")

    registry = config.default_worker_registry(require_queues=False)
    sqs = _get_sqs()
    store = DynamoDbOrchestrationStore(_get_ddb(), config.ORCHESTRATION_TABLE)
    queue = SqsQueue(
        sqs,
        merge_queue_url,
        max_messages=config.MERGE_POLL_MAX_MESSAGES,
        wait_seconds=config.POLL_WAIT_SECONDS,
    )
    names = [target.name for target in registry]
    return MergeCoordinator(
        queue,
        store,
        S3BlobStore(_get_s3()),
        {target.name: target.bucket for target in registry},
        merged_bucket,
        names,
        MergeTrigger(store, queue, names),
        idle_sleep=config.MERGE_IDLE_SLEEP_SECONDS,
        poll_error_backoff=config.POLL_ERROR_BACKOFF_SECONDS,
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scan engine merge coordinator")
    parser.add_argument("--merge-queue-url", default=config.MERGE_QUEUE_URL)
    parser.add_argument("--merged-bucket", default=config.MERGED_BUCKET)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    args = parse_args(argv)
    try:
        coordinator = build_coordinator(args.merge_queue_url, args.merged_bucket)
    except ValueError as exc:
        logger.error("[ERROR] %s", exc)
        return 1

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    coordinator.run(stop_event)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
