"""scan_engine_shared.serialization — DynamoDB (de)serialization and timestamps."""

from __future__ import annotations

import datetime as dt
import hashlib
import json
from decimal import Decimal
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

_SER = TypeSerializer()
_DESER = TypeDeserializer()


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, set):
        return sorted(_plain(v) for v in value)
    return value


def _serialize(value: Any) -> Dict[str, Any]:
    """Serialize a Python value for DynamoDB."""
    if isinstance(value, float):
        value = Decimal(str(value))
    return _SER.serialize(value)


def _deserialize(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize a DynamoDB item to a plain Python dict."""
    return {k: _plain(_DESER.deserialize(v)) for k, v in item.items()}


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _now_z(now: Optional[dt.datetime] = None) -> str:
    """UTC timestamp in ISO 8601 format with Z suffix."""
    return (now or _now()).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_z(value: Any) -> Optional[dt.datetime]:
    """Parse a timestamp written by ``_now_z``; None when unparseable."""
    text = str(value or "").strip()
    if not text:
        return None
    try:
        parsed = dt.datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _hour_bucket(now: Optional[dt.datetime] = None) -> str:
    """UTC hour partition used in worker output keys: yyyy/MM/dd/HH."""
    return (now or _now()).astimezone(dt.timezone.utc).strftime("%Y/%m/%d/%H")


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _payload_hash(value: Any) -> str:
    """Stable SHA-256 of a JSON document, independent of key order."""
    return hashlib.sha256(_canonical_json(value).encode("utf-8")).hexdigest()
