"""scan_engine_shared.memory — In-process store, queue and blob backends.

Same contracts as the DynamoDB/SQS/S3 adapters. The store applies each
conditional update under one lock, which gives the single-item
compare-and-swap the orchestration protocol relies on. Used by the test
suite and for running the whole pipeline inside one process.
"""

from __future__ import annotations

import copy
import json
import threading
import uuid
from collections import OrderedDict
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from scan_engine_shared.models import FinalStatus, OrchestrationRecord, StoreResult
from scan_engine_shared.queues import QueueMessage
from scan_engine_shared.store import (
    REQUEST_ID,
    Absent,
    Condition,
    DiffersOrAbsent,
    Equals,
    EqualsOrAbsent,
    Exists,
    Path,
)

_MISSING = object()


def _lookup(item: Mapping[str, Any], path: Path) -> Any:
    node: Any = item
    for segment in path:
        if not isinstance(node, Mapping) or segment not in node:
            return _MISSING
        node = node[segment]
    return node


def _holds(item: Mapping[str, Any], cond: Condition) -> bool:
    current = _lookup(item, cond.path)
    if isinstance(cond, Equals):
        return current is not _MISSING and current == cond.value
    if isinstance(cond, EqualsOrAbsent):
        return current is _MISSING or current == cond.value
    if isinstance(cond, DiffersOrAbsent):
        return current is _MISSING or current != cond.value
    if isinstance(cond, Exists):
        return current is not _MISSING
    if isinstance(cond, Absent):
        return current is _MISSING
    raise TypeError(f"Unsupported condition: {cond!r}")


def _assign(item: Dict[str, Any], path: Path, value: Any) -> None:
    node = item
    for segment in path[:-1]:
        child = node.get(segment)
        if not isinstance(child, dict):
            # DynamoDB rejects SET on a path whose parent map is missing.
            raise ValueError(f"Invalid document path: {'.'.join(path)}")
        node = child
    node[path[-1]] = copy.deepcopy(value)


class InMemoryOrchestrationStore:
    def __init__(self) -> None:
        self._items: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.history: List[Tuple[str, Dict[Path, Any], StoreResult]] = []

    def create_record(self, record: OrchestrationRecord) -> StoreResult:
        with self._lock:
            if record.request_id in self._items:
                return StoreResult.CONFLICT
            self._items[record.request_id] = copy.deepcopy(record.to_item())
            return StoreResult.OK

    def get_record(self, request_id: str) -> Optional[OrchestrationRecord]:
        with self._lock:
            item = self._items.get(request_id)
            if item is None:
                return None
            return OrchestrationRecord.from_item(copy.deepcopy(item))

    def conditional_update(
        self,
        request_id: str,
        mutations: Mapping[Path, Any],
        predicate: Sequence[Condition] = (),
    ) -> StoreResult:
        if not mutations:
            raise ValueError("at least one mutation is required")
        with self._lock:
            item = self._items.get(request_id)
            if item is None:
                result = StoreResult.NOT_FOUND
            elif not all(_holds(item, cond) for cond in [Exists(REQUEST_ID), *predicate]):
                result = StoreResult.PRECONDITION_FAILED
            else:
                updated = copy.deepcopy(item)
                for path, value in mutations.items():
                    _assign(updated, path, value)
                self._items[request_id] = updated
                result = StoreResult.OK
            self.history.append((request_id, dict(mutations), result))
            return result

    def scan_unfinished(self, page_size: int = 100) -> Iterator[OrchestrationRecord]:
        with self._lock:
            items = [copy.deepcopy(i) for i in self._items.values()]
        for item in items:
            if item.get("finalStatus") != FinalStatus.DONE.value:
                yield OrchestrationRecord.from_item(item)

    def raw_item(self, request_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get(request_id)
            return copy.deepcopy(item) if item is not None else None


class InMemoryQueue:
    """At-least-once queue: received messages stay in flight until deleted.

    ``redeliver`` returns every in-flight message to the queue, which is what
    an expired visibility timeout does on SQS.
    """

    def __init__(self, name: str = "queue", *, max_messages: int = 10):
        self.queue_url = f"memory://{name}"
        self.max_messages = max_messages
        self._lock = threading.Lock()
        self._visible: "OrderedDict[str, str]" = OrderedDict()
        self._in_flight: Dict[str, Tuple[str, str]] = {}
        self.sent: List[Tuple[str, str]] = []

    def send(self, body: Any) -> str:
        text = body if isinstance(body, str) else json.dumps(body, default=str)
        message_id = str(uuid.uuid4())
        with self._lock:
            self._visible[message_id] = text
            self.sent.append((message_id, text))
        return message_id

    def receive(self) -> List[QueueMessage]:
        out: List[QueueMessage] = []
        with self._lock:
            while self._visible and len(out) < self.max_messages:
                message_id, body = self._visible.popitem(last=False)
                receipt = str(uuid.uuid4())
                self._in_flight[receipt] = (message_id, body)
                out.append(QueueMessage(message_id=message_id, receipt_handle=receipt, body=body))
        return out

    def delete(self, message: QueueMessage) -> None:
        with self._lock:
            self._in_flight.pop(message.receipt_handle, None)

    def redeliver(self) -> int:
        with self._lock:
            count = len(self._in_flight)
            for message_id, body in self._in_flight.values():
                self._visible[message_id] = body
            self._in_flight.clear()
            return count

    def visible_count(self) -> int:
        with self._lock:
            return len(self._visible)

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)


class InMemoryBlobStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: Dict[Tuple[str, str], str] = {}

    def put_json(self, bucket: str, key: str, document: Any) -> None:
        with self._lock:
            self._objects[(bucket, key)] = json.dumps(document, default=str)

    def get_json(self, bucket: str, key: str) -> Optional[Any]:
        with self._lock:
            raw = self._objects.get((bucket, key))
        return None if raw is None else json.loads(raw)

    def raw(self, bucket: str, key: str) -> Optional[str]:
        with self._lock:
            return self._objects.get((bucket, key))

    def keys(self, bucket: Optional[str] = None) -> List[str]:
        with self._lock:
            return sorted(k for b, k in self._objects if bucket is None or b == bucket)
