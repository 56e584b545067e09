"""scan_engine_shared.models — Orchestration record, queue messages and errors."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional

# ---------------------------------------------------------------------------
# Status values
# ---------------------------------------------------------------------------


class WorkerStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class FinalStatus(str, Enum):
    PENDING = "PENDING"
    MERGING = "MERGING"
    DONE = "DONE"


class StoreResult(str, Enum):
    """Outcome of a store write; callers branch on it instead of catching."""

    OK = "OK"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class InvalidPayload(ValueError):
    """Dispatch input did not resolve to a non-empty payload."""


class InvalidMessage(ValueError):
    """A queue message body could not be decoded into the expected shape."""


class IdempotencyConflict(Exception):
    """An idempotency key was reused with a different payload."""


class DispatchError(RuntimeError):
    """One or more fan-out sends failed after the record was written."""

    def __init__(self, request_id: str, failed_workers: Iterable[str]):
        self.request_id = request_id
        self.failed_workers = tuple(failed_workers)
        super().__init__(
            f"Failed to enqueue requestId={request_id} for worker(s): {', '.join(self.failed_workers)}"
        )


class MergeError(RuntimeError):
    """The merge step cannot proceed for this request."""


# ---------------------------------------------------------------------------
# Orchestration record
# ---------------------------------------------------------------------------


@dataclass
class OrchestrationRecord:
    request_id: str
    engine: Dict[str, str]
    outputs: Dict[str, str] = field(default_factory=dict)
    final_status: FinalStatus = FinalStatus.PENDING
    merged_key: Optional[str] = None
    merged_at: Optional[str] = None
    created_at: Optional[str] = None
    idempotency_key: Optional[str] = None
    request_hash: Optional[str] = None
    message_ids: Dict[str, str] = field(default_factory=dict)
    stuck_detected_at: Optional[str] = None

    @classmethod
    def start(
        cls,
        request_id: str,
        workers: Iterable[str],
        created_at: str,
        *,
        idempotency_key: Optional[str] = None,
        request_hash: Optional[str] = None,
    ) -> "OrchestrationRecord":
        return cls(
            request_id=request_id,
            engine={name: WorkerStatus.IN_PROGRESS.value for name in workers},
            created_at=created_at,
            idempotency_key=idempotency_key,
            request_hash=request_hash,
        )

    def pending_workers(self) -> list[str]:
        return sorted(name for name, status in self.engine.items() if status != WorkerStatus.DONE.value)

    def all_done(self, workers: Iterable[str]) -> bool:
        return all(self.engine.get(name) == WorkerStatus.DONE.value for name in workers)

    def to_item(self) -> Dict[str, Any]:
        """Plain attribute dict; ``finalStatus`` is left absent while pending."""
        item: Dict[str, Any] = {
            "requestId": self.request_id,
            "engine": dict(self.engine),
            "outputs": dict(self.outputs),
        }
        if self.final_status != FinalStatus.PENDING:
            item["finalStatus"] = self.final_status.value
        optional = {
            "mergedKey": self.merged_key,
            "mergedAt": self.merged_at,
            "createdAt": self.created_at,
            "idempotencyKey": self.idempotency_key,
            "requestHash": self.request_hash,
            "stuckDetectedAt": self.stuck_detected_at,
        }
        item.update({k: v for k, v in optional.items() if v})
        if self.message_ids:
            item["messageIds"] = dict(self.message_ids)
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "OrchestrationRecord":
        raw_status = str(item.get("finalStatus") or FinalStatus.PENDING.value).upper()
        try:
            final_status = FinalStatus(raw_status)
        except ValueError:
            raise ValueError(f"Unknown finalStatus '{raw_status}' for requestId={item.get('requestId')}")
        return cls(
            request_id=str(item["requestId"]),
            engine={str(k): str(v) for k, v in (item.get("engine") or {}).items()},
            outputs={str(k): str(v) for k, v in (item.get("outputs") or {}).items()},
            final_status=final_status,
            merged_key=item.get("mergedKey") or None,
            merged_at=item.get("mergedAt") or None,
            created_at=item.get("createdAt") or None,
            idempotency_key=item.get("idempotencyKey") or None,
            request_hash=item.get("requestHash") or None,
            message_ids={str(k): str(v) for k, v in (item.get("messageIds") or {}).items()},
            stuck_detected_at=item.get("stuckDetectedAt") or None,
        )


# ---------------------------------------------------------------------------
# Queue messages
# ---------------------------------------------------------------------------


def _decode_object(body: Any) -> Dict[str, Any]:
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8")
    try:
        decoded = json.loads(body) if isinstance(body, str) else body
    except (json.JSONDecodeError, TypeError) as exc:
        raise InvalidMessage(f"Message body is not valid JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise InvalidMessage("Message body must be a JSON object")
    return decoded


def _require_request_id(decoded: Dict[str, Any]) -> str:
    request_id = decoded.get("requestId")
    request_id = "" if request_id is None else str(request_id).strip()
    if not request_id:
        raise InvalidMessage("requestId is required in message")
    return request_id


@dataclass(frozen=True)
class Envelope:
    """Work-queue message: a request id plus the opaque client payload."""

    request_id: str
    payload: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"requestId": self.request_id, "payload": self.payload}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, body: Any) -> "Envelope":
        decoded = _decode_object(body)
        return cls(request_id=_require_request_id(decoded), payload=decoded.get("payload"))


@dataclass(frozen=True)
class MergeTriggerMessage:
    """Wake-up signal for the merge coordinator; carries no merge data."""

    request_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"requestId": self.request_id}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, body: Any) -> "MergeTriggerMessage":
        return cls(request_id=_require_request_id(_decode_object(body)))
