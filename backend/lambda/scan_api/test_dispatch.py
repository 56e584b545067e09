"""test_dispatch.py — Unit tests for the scan dispatch service.

Run from the repository root:
    python3 -m pytest backend/lambda/scan_api/test_dispatch.py -v
"""

from __future__ import annotations

import json
import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer", "python"))

from dispatch import DispatchService, resolve_payload  # noqa: E402
from scan_engine_shared.memory import InMemoryOrchestrationStore, InMemoryQueue  # noqa: E402
from scan_engine_shared.models import (  # noqa: E402
    DispatchError,
    Envelope,
    IdempotencyConflict,
    InvalidPayload,
    StoreResult,
)
from scan_engine_shared.store import engine_path  # noqa: E402

CREATED_AT = "2026-01-01T00:00:00Z"


class _BrokenQueue:
    queue_url = "memory://broken"

    def __init__(self):
        self.attempts = 0

    def send(self, body):
        self.attempts += 1
        raise ConnectionError("sqs unavailable")


def _service(store, publishers, request_id="req-1"):
    return DispatchService(
        store,
        publishers,
        clock=lambda: CREATED_AT,
        id_factory=lambda: request_id,
    )


class ResolvePayloadTests(unittest.TestCase):
    def test_payload_key_is_unwrapped(self):
        self.assertEqual(resolve_payload({"payload": {"message": "hello"}}), {"message": "hello"})

    def test_whole_input_is_payload_without_payload_key(self):
        self.assertEqual(resolve_payload({"message": "hello"}), {"message": "hello"})

    def test_scalar_payload_is_kept(self):
        self.assertEqual(resolve_payload({"payload": 0}), 0)
        self.assertEqual(resolve_payload("scan me"), "scan me")

    def test_empty_inputs_are_rejected(self):
        for raw in (None, {}, [], "", "   ", {"payload": None}, {"payload": {}}, {"payload": []}, {"payload": "  "}):
            with self.subTest(raw=raw):
                with self.assertRaises(InvalidPayload):
                    resolve_payload(raw)


class DispatchServiceTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryOrchestrationStore()
        self.queue_a = InMemoryQueue("service-a")
        self.queue_b = InMemoryQueue("service-b")
        self.service = _service(self.store, {"service-b": self.queue_b, "service-a": self.queue_a})

    def test_workers_are_sorted(self):
        self.assertEqual(self.service.workers, ("service-a", "service-b"))

    def test_requires_publishers(self):
        with self.assertRaises(ValueError):
            DispatchService(self.store, {})

    def test_invalid_payload_writes_nothing(self):
        with self.assertRaises(InvalidPayload):
            self.service.dispatch({"payload": {}})
        self.assertEqual(list(self.store.scan_unfinished()), [])
        self.assertEqual(self.queue_a.sent, [])
        self.assertEqual(self.queue_b.sent, [])

    def test_dispatch_creates_record_and_sends_one_envelope_per_worker(self):
        result = self.service.dispatch({"payload": {"message": "hello"}})

        self.assertEqual(result["requestId"], "req-1")
        self.assertEqual(set(result["messageIds"]), {"service-a", "service-b"})

        item = self.store.raw_item("req-1")
        self.assertEqual(item["engine"], {"service-a": "IN_PROGRESS", "service-b": "IN_PROGRESS"})
        self.assertEqual(item["outputs"], {})
        self.assertNotIn("finalStatus", item)
        self.assertEqual(item["createdAt"], CREATED_AT)
        self.assertEqual(item["messageIds"], result["messageIds"])

        for queue in (self.queue_a, self.queue_b):
            self.assertEqual(len(queue.sent), 1)
            envelope = Envelope.from_json(queue.sent[0][1])
            self.assertEqual(envelope.request_id, "req-1")
            self.assertEqual(envelope.payload, {"message": "hello"})

    def test_envelope_payload_is_forwarded_unchanged(self):
        payload = {"nested": {"list": [1, 2.5, "x"], "flag": True}, "n": None}
        self.service.dispatch({"payload": payload})
        body = json.loads(self.queue_a.sent[0][1])
        self.assertEqual(body, {"requestId": "req-1", "payload": payload})

    def test_partial_fan_out_raises_after_attempting_every_worker(self):
        broken = _BrokenQueue()
        service = _service(self.store, {"service-a": self.queue_a, "service-b": broken})

        with self.assertRaises(DispatchError) as ctx:
            service.dispatch({"message": "hello"})

        self.assertEqual(ctx.exception.request_id, "req-1")
        self.assertEqual(ctx.exception.failed_workers, ("service-b",))
        self.assertEqual(broken.attempts, 1)
        self.assertEqual(len(self.queue_a.sent), 1)
        item = self.store.raw_item("req-1")
        self.assertIsNotNone(item)
        self.assertNotIn("messageIds", item)

    def test_uuid_request_ids_by_default(self):
        service = DispatchService(self.store, {"service-a": self.queue_a})
        first = service.dispatch({"message": "one"})["requestId"]
        second = service.dispatch({"message": "two"})["requestId"]
        self.assertNotEqual(first, second)
        self.assertEqual(len(first), 36)


class IdempotentDispatchTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryOrchestrationStore()
        self.queue_a = InMemoryQueue("service-a")
        self.queue_b = InMemoryQueue("service-b")
        self.service = _service(self.store, {"service-a": self.queue_a, "service-b": self.queue_b})

    def test_same_key_and_payload_returns_original_dispatch(self):
        first = self.service.dispatch({"message": "hello"}, idempotency_key="client-42")
        second = self.service.dispatch({"message": "hello"}, idempotency_key="client-42")

        self.assertEqual(first, second)
        self.assertNotEqual(first["requestId"], "req-1")
        self.assertEqual(len(self.queue_a.sent), 1)
        self.assertEqual(len(self.queue_b.sent), 1)

    def test_key_order_in_payload_does_not_matter(self):
        first = self.service.dispatch({"a": 1, "b": 2}, idempotency_key="k")
        second = self.service.dispatch({"b": 2, "a": 1}, idempotency_key="k")
        self.assertEqual(first["requestId"], second["requestId"])

    def test_same_key_different_payload_conflicts(self):
        self.service.dispatch({"message": "hello"}, idempotency_key="client-42")
        with self.assertRaises(IdempotencyConflict):
            self.service.dispatch({"message": "other"}, idempotency_key="client-42")

    def test_blank_key_is_ignored(self):
        result = self.service.dispatch({"message": "hello"}, idempotency_key="   ")
        self.assertEqual(result["requestId"], "req-1")

    def test_retry_resumes_partial_fan_out_for_unfinished_workers(self):
        broken = _BrokenQueue()
        failing = _service(self.store, {"service-a": self.queue_a, "service-b": broken})
        with self.assertRaises(DispatchError) as ctx:
            failing.dispatch({"message": "hello"}, idempotency_key="retry-me")
        request_id = ctx.exception.request_id

        # service-a already finished from the first send.
        self.assertEqual(
            self.store.conditional_update(request_id, {engine_path("service-a"): "DONE"}),
            StoreResult.OK,
        )

        result = self.service.dispatch({"message": "hello"}, idempotency_key="retry-me")

        self.assertEqual(result["requestId"], request_id)
        self.assertEqual(set(result["messageIds"]), {"service-b"})
        self.assertEqual(len(self.queue_a.sent), 1)
        self.assertEqual(len(self.queue_b.sent), 1)
        self.assertEqual(self.store.raw_item(request_id)["messageIds"], result["messageIds"])


if __name__ == "__main__":
    unittest.main()
