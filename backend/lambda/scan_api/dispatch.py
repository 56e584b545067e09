"""dispatch.py — Fan a new scan out to every configured worker.

The orchestration record is written before any message is sent, so a worker
or a status query that sees a request id can always find its record.

Part of scan_api.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, Mapping, Optional

from scan_engine_shared.models import (
    DispatchError,
    Envelope,
    IdempotencyConflict,
    InvalidPayload,
    OrchestrationRecord,
    StoreResult,
    WorkerStatus,
)
from scan_engine_shared.serialization import _now_z, _payload_hash

__all__ = [
    "DispatchService",
    "IDEMPOTENCY_NAMESPACE",
    "resolve_payload",
]

logger = logging.getLogger(__name__)

IDEMPOTENCY_NAMESPACE = uuid.UUID("5b0f7e0a-4d9c-4b7e-9a57-2f1c3c1a9e01")


def resolve_payload(raw_input: Any) -> Any:
    """Return the payload to forward, or raise InvalidPayload.

    A mapping with a ``payload`` key forwards that value; anything else is
    forwarded whole.
    """
    if isinstance(raw_input, Mapping) and "payload" in raw_input:
        payload = raw_input["payload"]
    else:
        payload = raw_input
    if payload is None:
        raise InvalidPayload("payload is required")
    if isinstance(payload, (Mapping, list, tuple)) and not payload:
        raise InvalidPayload("payload is required")
    if isinstance(payload, str) and not payload.strip():
        raise InvalidPayload("payload is required")
    return payload


class DispatchService:
    """Creates the orchestration record and sends one envelope per worker.

    ``publishers`` is the worker registry: worker name -> queue with a
    ``send(body) -> message_id`` method. It is built once at startup.
    """

    def __init__(
        self,
        store,
        publishers: Mapping[str, Any],
        *,
        clock: Callable[[], str] = _now_z,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        if not publishers:
            raise ValueError("at least one worker publisher is required")
        self._store = store
        self._publishers = dict(sorted(publishers.items()))
        self._clock = clock
        self._id_factory = id_factory

    @property
    def workers(self) -> tuple:
        return tuple(self._publishers)

    def dispatch(self, raw_input: Any, idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        payload = resolve_payload(raw_input)
        key = str(idempotency_key or "").strip() or None

        if key:
            request_id = str(uuid.uuid5(IDEMPOTENCY_NAMESPACE, key))
            request_hash = _payload_hash(payload)
        else:
            request_id = self._id_factory()
            request_hash = None

        record = OrchestrationRecord.start(
            request_id,
            self.workers,
            self._clock(),
            idempotency_key=key,
            request_hash=request_hash,
        )
        result = self._store.create_record(record)
        if result == StoreResult.CONFLICT:
            if not key:
                raise RuntimeError(f"requestId collision: {request_id}")
            return self._replay(request_id, key, request_hash, payload)
        if result != StoreResult.OK:
            raise RuntimeError(f"Unexpected store result {result.value} creating requestId={request_id}")

        logger.info("Created orchestration record. requestId=%s workers=%s", request_id, ",".join(self.workers))
        message_ids = self._fan_out(request_id, payload, self.workers)
        return {"requestId": request_id, "messageIds": message_ids}

    def _fan_out(self, request_id: str, payload: Any, workers) -> Dict[str, str]:
        body = Envelope(request_id=request_id, payload=payload).to_json()
        message_ids: Dict[str, str] = {}
        failed = []
        for name in workers:
            try:
                message_ids[name] = self._publishers[name].send(body)
            except Exception:
                logger.error("Failed to enqueue envelope. requestId=%s worker=%s", request_id, name, exc_info=True)
                failed.append(name)
        if failed:
            raise DispatchError(request_id, failed)

        self._record_message_ids(request_id, message_ids)
        logger.info("Dispatched requestId=%s to %d worker(s)", request_id, len(message_ids))
        return message_ids

    def _record_message_ids(self, request_id: str, message_ids: Dict[str, str]) -> None:
        # Only marks the fan-out as complete for idempotent replays.
        try:
            self._store.conditional_update(request_id, {("messageIds",): dict(message_ids)})
        except Exception:
            logger.warning("Failed to record messageIds. requestId=%s", request_id, exc_info=True)

    def _replay(self, request_id: str, key: str, request_hash: str, payload: Any) -> Dict[str, Any]:
        existing = self._store.get_record(request_id)
        if existing is None:
            raise RuntimeError(f"Record for idempotency key vanished. requestId={request_id}")
        if existing.request_hash and existing.request_hash != request_hash:
            raise IdempotencyConflict(f"Idempotency-Key '{key}' was already used with a different payload")

        if existing.message_ids:
            logger.info("Idempotent replay. requestId=%s", request_id)
            return {"requestId": request_id, "messageIds": dict(existing.message_ids)}

        # A previous attempt wrote the record but did not finish fanning out.
        resend = [
            name
            for name in self.workers
            if existing.engine.get(name, WorkerStatus.IN_PROGRESS.value) != WorkerStatus.DONE.value
        ]
        logger.info("Resuming fan-out. requestId=%s workers=%s", request_id, ",".join(resend))
        message_ids = self._fan_out(request_id, payload, resend) if resend else {}
        return {"requestId": request_id, "messageIds": message_ids}
