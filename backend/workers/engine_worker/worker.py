#!/usr/bin/env python3
"""engine_worker/worker.py — Long-running SQS consumer for one worker identity.

One process runs per worker name (e.g. service-a, service-b). Each message is
a scan envelope produced by scan_api. For every message the worker:

    1. decodes the envelope (blank requestId → left on the queue)
    2. tags the payload with its worker name and does its unit of work
    3. writes the output to S3 at
       {workerName}/{yyyy/MM/dd/HH}/{requestId}-{messageId}.json
    4. sets engine[workerName] = DONE and outputs[workerName] = key
    5. attempts the PENDING → MERGING merge-trigger transition
    6. deletes the message

Any failure before step 6 leaves the message for redelivery, so every step is
safe to repeat.

Environment variables:
    WORKER_NAME            required
    WORKER_QUEUE_URL       required
    WORKER_BUCKET          default: PAYLOAD_BUCKET
    MERGE_QUEUE_URL        required
    ORCHESTRATION_TABLE    default: scan-orchestration
    EXPECTED_WORKERS       default: service-a,service-b

Usage:
    WORKER_NAME=service-a WORKER_QUEUE_URL=... MERGE_QUEUE_URL=... \\
        python3 backend/workers/engine_worker/worker.py
"""

from __future__ import annotations

import argparse
import logging
import random
import signal
import sys
import threading
import time
from typing import Any, Callable, Dict

from scan_engine_shared import config
from scan_engine_shared.models import Envelope, InvalidMessage, StoreResult, WorkerStatus
from scan_engine_shared.queues import QueueMessage
from scan_engine_shared.serialization import _hour_bucket, _now
from scan_engine_shared.store import engine_path, outputs_path, Exists

logger = logging.getLogger("engine_worker")


class RecordUpdateError(RuntimeError):
    """The worker's completion could not be recorded."""


def random_delay(min_seconds: float, max_seconds: float) -> Callable[[], float]:
    low, high = sorted((max(0.0, min_seconds), max(0.0, max_seconds)))
    return lambda: random.uniform(low, high)


def normalize_payload(raw: Any, worker_name: str) -> Dict[str, Any]:
    """Copy the payload into a worker-tagged document."""
    if isinstance(raw, dict):
        payload = {str(k): v for k, v in raw.items()}
    elif raw is None:
        payload = {}
    else:
        payload = {"payload": raw}
    payload["workerName"] = worker_name
    return payload


def output_key(worker_name: str, request_id: str, message_id: str, now=None) -> str:
    return f"{worker_name}/{_hour_bucket(now)}/{request_id}-{message_id}.json"


class EngineWorker:
    def __init__(
        self,
        name: str,
        queue,
        store,
        blobs,
        bucket: str,
        trigger,
        *,
        processing_delay: Callable[[], float] = lambda: 0.0,
        sleep: Callable[[float], None] = time.sleep,
        poll_error_backoff: float = 5.0,
        clock=_now,
    ):
        if not name or not name.strip():
            raise ValueError("Worker name is required")
        if not bucket:
            raise ValueError("Worker bucket is required")
        self.name = name.strip()
        self.queue = queue
        self.store = store
        self.blobs = blobs
        self.bucket = bucket
        self.trigger = trigger
        self.processing_delay = processing_delay
        self.poll_error_backoff = poll_error_backoff
        self._clock = clock
        self._sleep = sleep

    # -- loop -----------------------------------------------------------------

    def run(self, stop_event: threading.Event) -> None:
        logger.info("Started worker. name=%s queue=%s bucket=%s", self.name, self.queue.queue_url, self.bucket)
        while not stop_event.is_set():
            try:
                messages = self.queue.receive()
            except Exception:
                logger.error("Failed to poll queue. name=%s", self.name, exc_info=True)
                stop_event.wait(self.poll_error_backoff)
                continue
            for message in messages:
                self.handle_message(message)
        logger.info("Worker stopped. name=%s", self.name)

    def poll_once(self) -> int:
        """Receive one batch and handle it; returns the number acknowledged."""
        return sum(1 for message in self.queue.receive() if self.handle_message(message))

    # -- message handling -----------------------------------------------------

    def handle_message(self, message: QueueMessage) -> bool:
        """Process and acknowledge one message. False leaves it for redelivery."""
        try:
            envelope = Envelope.from_json(message.body)
        except InvalidMessage as exc:
            logger.warning("Rejected message. messageId=%s reason=%s", message.message_id, exc)
            return False

        try:
            key = self.process(envelope, message.message_id)
            self.trigger.try_trigger(envelope.request_id)
            self.queue.delete(message)
        except Exception:
            logger.error(
                "Failed to process message. requestId=%s messageId=%s",
                envelope.request_id,
                message.message_id,
                exc_info=True,
            )
            return False

        logger.info("Stored worker output. requestId=%s key=%s messageId=%s", envelope.request_id, key, message.message_id)
        return True

    def process(self, envelope: Envelope, message_id: str) -> str:
        request_id = envelope.request_id
        document = {
            "requestId": request_id,
            "payload": normalize_payload(envelope.payload, self.name),
        }

        delay = max(0.0, float(self.processing_delay()))
        if delay:
            logger.info("Processing delay before upload. requestId=%s delaySeconds=%.1f", request_id, delay)
            self._sleep(delay)

        key = output_key(self.name, request_id, message_id, self._clock())
        self.blobs.put_json(self.bucket, key, document)
        self.record_completion(request_id, key)
        return key

    def record_completion(self, request_id: str, key: str) -> None:
        result = self.store.conditional_update(
            request_id,
            {
                engine_path(self.name): WorkerStatus.DONE.value,
                outputs_path(self.name): key,
            },
            [Exists(engine_path(self.name))],
        )
        if result == StoreResult.NOT_FOUND:
            raise RecordUpdateError(f"No orchestration record for requestId={request_id}")
        if result != StoreResult.OK:
            raise RecordUpdateError(f"Worker '{self.name}' is not part of requestId={request_id}")


# ---------------------------------------------------------------------------
# Process entry point
# ---------------------------------------------------------------------------


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _stop(signum, _frame):
        logger.info("Received signal %s; stopping after current iteration", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)


def build_worker(name: str, queue_url: str, bucket: str, merge_queue_url: str) -> EngineWorker:
    from scan_engine_shared.aws_clients import _get_ddb, _get_s3, _get_sqs
    from scan_engine_shared.blob import S3BlobStore
    from scan_engine_shared.merge_trigger import MergeTrigger
    from scan_engine_shared.queues import SqsQueue
    from scan_engine_shared.store import DynamoDbOrchestrationStore

    if not queue_url:
        raise ValueError("WORKER_QUEUE_URL is required")
    if not merge_queue_url:
        raise ValueError("MERGE_QUEUE_URL is required")

    sqs = _get_sqs()
    store = DynamoDbOrchestrationStore(_get_ddb(), config.ORCHESTRATION_TABLE)
    trigger = MergeTrigger(store, SqsQueue(sqs, merge_queue_url), config.EXPECTED_WORKERS)
    queue = SqsQueue(
        sqs,
        queue_url,
        max_messages=config.POLL_MAX_MESSAGES,
        wait_seconds=config.POLL_WAIT_SECONDS,
    )
    return EngineWorker(
        name,
        queue,
        store,
        S3BlobStore(_get_s3()),
        bucket,
        trigger,
        processing_delay=random_delay(config.PROCESSING_DELAY_MIN_SECONDS, config.PROCESSING_DELAY_MAX_SECONDS),
        poll_error_backoff=config.POLL_ERROR_BACKOFF_SECONDS,
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scan engine worker")
    parser.add_argument("--name", default=config.WORKER_NAME)
    parser.add_argument("--queue-url", default=config.WORKER_QUEUE_URL)
    parser.add_argument("--bucket", default=config.WORKER_BUCKET or config.PAYLOAD_BUCKET)
    parser.add_argument("--merge-queue-url", default=config.MERGE_QUEUE_URL)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    args = parse_args(argv)
    try:
        worker = build_worker(args.name, args.queue_url, args.bucket, args.merge_queue_url)
    except ValueError as exc:
        logger.error("[ERROR] %s", exc)
        return 1

    if worker.name not in config.EXPECTED_WORKERS:
        logger.warning("Worker '%s' is not in EXPECTED_WORKERS=%s", worker.name, ",".join(config.EXPECTED_WORKERS))

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    worker.run(stop_event)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
