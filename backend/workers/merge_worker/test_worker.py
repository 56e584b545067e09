"""test_worker.py — Unit tests for the merge coordinator.

Run from the repository root:
    python3 -m pytest backend/workers/merge_worker/test_worker.py -v
"""

from __future__ import annotations

import datetime as dt
import importlib.util
import os
import sys
import threading
import unittest

_HERE = os.path.dirname(__file__)
sys.path.insert(0, os.path.join(_HERE, "..", "..", "lambda", "shared_layer", "python"))

_spec = importlib.util.spec_from_file_location("merge_worker_module", os.path.join(_HERE, "worker.py"))
merge_worker = importlib.util.module_from_spec(_spec)
sys.modules[_spec.name] = merge_worker
_spec.loader.exec_module(merge_worker)

from scan_engine_shared.memory import (  # noqa: E402
    InMemoryBlobStore,
    InMemoryOrchestrationStore,
    InMemoryQueue,
)
from scan_engine_shared.merge_trigger import MergeTrigger  # noqa: E402
from scan_engine_shared.models import MergeError, MergeTriggerMessage, OrchestrationRecord  # noqa: E402
from scan_engine_shared.store import FINAL_STATUS, engine_path, outputs_path  # noqa: E402

MergeOutcome = merge_worker.MergeOutcome

WORKERS = ("service-a", "service-b")
BUCKETS = {"service-a": "bucket-a", "service-b": "bucket-b"}
NOW = dt.datetime(2026, 3, 4, 5, 6, 7, tzinfo=dt.timezone.utc)


class _RecordingEvent(threading.Event):
    def __init__(self):
        super().__init__()
        self.waits = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        self.set()
        return True


class MergeCoordinatorTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryOrchestrationStore()
        self.blobs = InMemoryBlobStore()
        self.merge_queue = InMemoryQueue("merge")
        self.coordinator = self._coordinator(self.store)
        self.store.create_record(OrchestrationRecord.start("req-1", WORKERS, "2026-03-04T05:00:00Z"))

    def _coordinator(self, store, queue=None, clock=lambda: NOW, **kwargs):
        return merge_worker.MergeCoordinator(
            queue or self.merge_queue,
            store,
            self.blobs,
            BUCKETS,
            "merged",
            WORKERS,
            MergeTrigger(store, self.merge_queue, WORKERS),
            clock=clock,
            **kwargs,
        )

    def _complete(self, *workers, request_id="req-1", write_blobs=True):
        for name in workers:
            key = f"{name}/2026/03/04/05/{request_id}-m.json"
            if write_blobs:
                self.blobs.put_json(BUCKETS[name], key, {"requestId": request_id, "payload": {"workerName": name}})
            self.store.conditional_update(
                request_id,
                {engine_path(name): "DONE", outputs_path(name): key},
            )

    def _claim(self, request_id="req-1"):
        self.store.conditional_update(request_id, {FINAL_STATUS: "MERGING"})

    def test_requires_merged_bucket(self):
        with self.assertRaises(ValueError):
            merge_worker.MergeCoordinator(self.merge_queue, self.store, self.blobs, BUCKETS, "", WORKERS, None)

    def test_merge_writes_document_and_finalizes(self):
        self._complete("service-b", "service-a")
        self._claim()

        self.assertEqual(self.coordinator.merge("req-1"), MergeOutcome.MERGED)

        merged = self.blobs.get_json("merged", "req-1.json")
        self.assertEqual(
            merged,
            {
                "requestId": "req-1",
                "mergedAt": "2026-03-04T05:06:07Z",
                "items": [
                    {"requestId": "req-1", "payload": {"workerName": "service-a"}},
                    {"requestId": "req-1", "payload": {"workerName": "service-b"}},
                ],
            },
        )
        item = self.store.raw_item("req-1")
        self.assertEqual(item["finalStatus"], "DONE")
        self.assertEqual(item["mergedKey"], "req-1.json")
        self.assertEqual(item["mergedAt"], "2026-03-04T05:06:07Z")

    def test_duplicate_trigger_does_not_rewrite(self):
        self._complete(*WORKERS)
        self._claim()
        self.coordinator.merge("req-1")
        before = self.blobs.raw("merged", "req-1.json")

        later = self._coordinator(self.store, clock=lambda: NOW + dt.timedelta(hours=1))
        self.assertEqual(later.merge("req-1"), MergeOutcome.ALREADY_DONE)
        self.assertEqual(self.blobs.raw("merged", "req-1.json"), before)
        self.assertEqual(self.store.raw_item("req-1")["mergedAt"], "2026-03-04T05:06:07Z")

    def test_missing_record_raises(self):
        with self.assertRaises(MergeError):
            self.coordinator.merge("missing")

    def test_pending_with_unfinished_workers_is_skipped(self):
        self._complete("service-a")
        self.assertEqual(self.coordinator.merge("req-1"), MergeOutcome.SKIPPED)
        self.assertEqual(self.blobs.keys("merged"), [])
        self.assertNotIn("finalStatus", self.store.raw_item("req-1"))

    def test_pending_after_release_is_reclaimed_and_merged(self):
        self._complete(*WORKERS)
        self.store.conditional_update("req-1", {FINAL_STATUS: "PENDING"})
        self.assertEqual(self.coordinator.merge("req-1"), MergeOutcome.MERGED)
        self.assertEqual(self.store.raw_item("req-1")["finalStatus"], "DONE")

    def test_missing_output_key_raises_without_partial_merge(self):
        self._complete(*WORKERS)
        self._claim()
        self.store.conditional_update("req-1", {("outputs",): {"service-a": "a.json"}})

        with self.assertRaises(MergeError):
            self.coordinator.merge("req-1")
        self.assertEqual(self.blobs.keys("merged"), [])
        self.assertEqual(self.store.raw_item("req-1")["finalStatus"], "MERGING")

    def test_missing_output_blob_raises(self):
        self._complete(*WORKERS, write_blobs=False)
        self._claim()
        with self.assertRaises(MergeError):
            self.coordinator.merge("req-1")
        self.assertEqual(self.blobs.keys("merged"), [])

    def test_lost_finalize_race_reports_already_done(self):
        store = self.store

        class RacingStore(InMemoryOrchestrationStore):
            def get_record(self, request_id):
                record = store.get_record(request_id)
                store.conditional_update(request_id, {FINAL_STATUS: "DONE"})
                return record

            def conditional_update(self, *args, **kwargs):
                return store.conditional_update(*args, **kwargs)

        self._complete(*WORKERS)
        self._claim()
        coordinator = self._coordinator(RacingStore())

        self.assertEqual(coordinator.merge("req-1"), MergeOutcome.ALREADY_DONE)
        self.assertNotIn("mergedKey", self.store.raw_item("req-1"))
        self.assertIsNone(self.blobs.raw("merged", "req-1.json"))

    def test_overlapping_merges_keep_blob_and_record_in_agreement(self):
        store = self.store
        fast = self._coordinator(store)
        reads = []

        class OverlappingStore(InMemoryOrchestrationStore):
            def get_record(self, request_id):
                record = store.get_record(request_id)
                reads.append(record)
                if len(reads) == 1:
                    fast.merge(request_id)
                return record

            def conditional_update(self, *args, **kwargs):
                return store.conditional_update(*args, **kwargs)

        self._complete(*WORKERS)
        self._claim()
        slow = self._coordinator(OverlappingStore(), clock=lambda: NOW + dt.timedelta(minutes=5))

        self.assertEqual(slow.merge("req-1"), MergeOutcome.ALREADY_DONE)

        item = self.store.raw_item("req-1")
        merged = self.blobs.get_json("merged", "req-1.json")
        self.assertEqual(item["mergedAt"], "2026-03-04T05:06:07Z")
        self.assertEqual(merged["mergedAt"], item["mergedAt"])

    def test_merge_resumed_after_partial_run_reuses_stored_merged_at(self):
        self._complete(*WORKERS)
        self._claim()
        self.store.conditional_update("req-1", {("mergedAt",): "2026-03-04T05:06:00Z"})
        later = self._coordinator(self.store, clock=lambda: NOW + dt.timedelta(hours=1))

        self.assertEqual(later.merge("req-1"), MergeOutcome.MERGED)

        item = self.store.raw_item("req-1")
        self.assertEqual(item["finalStatus"], "DONE")
        self.assertEqual(item["mergedAt"], "2026-03-04T05:06:00Z")
        self.assertEqual(self.blobs.get_json("merged", "req-1.json")["mergedAt"], "2026-03-04T05:06:00Z")

    def test_handle_message_acknowledges_outcomes_only(self):
        self._complete(*WORKERS)
        self._claim()
        self.merge_queue.send(MergeTriggerMessage("req-1").to_json())
        self.merge_queue.send(MergeTriggerMessage("missing").to_json())
        self.merge_queue.send("{}")

        self.assertEqual(self.coordinator.poll_once(), 1)
        self.assertEqual(self.merge_queue.in_flight_count(), 2)

    def test_idle_poll_sleeps(self):
        stop = _RecordingEvent()
        coordinator = self._coordinator(self.store, idle_sleep=40.0)
        coordinator.run(stop)
        self.assertEqual(stop.waits, [40.0])

    def test_poll_failure_backs_off(self):
        class BrokenQueue:
            queue_url = "memory://broken"

            def receive(self):
                raise ConnectionError("poll failed")

        stop = _RecordingEvent()
        coordinator = self._coordinator(self.store, queue=BrokenQueue(), poll_error_backoff=5.0)
        coordinator.run(stop)
        self.assertEqual(stop.waits, [5.0])


if __name__ == "__main__":
    unittest.main()
