"""scan_engine_shared.http_utils — HTTP response helpers with CORS.

Standard response envelope and event parsing for the API Gateway-facing
Lambda. Handles both REST (v1) and HTTP API (v2) event shapes.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from scan_engine_shared import config

logger = logging.getLogger(__name__)


def _cors_headers() -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": config.CORS_ORIGIN,
        "Access-Control-Allow-Headers": "Content-Type,Authorization,Idempotency-Key",
        "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
    }


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return int(obj) if obj % 1 == 0 else float(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    """Build a standard API Gateway response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json", **_cors_headers()},
        "body": json.dumps(body, default=_json_default) if body != "" else "",
        "isBase64Encoded": False,
    }


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    """Build a standard error response.

    Args:
        status_code: HTTP status code.
        message: Human-readable error message.
        **extra: Additional fields merged into the response payload.
    """
    payload: Dict[str, Any] = {"success": False, "error": message}
    if extra:
        payload.update(extra)
    return _response(status_code, payload)


def _is_http_event(event: Any) -> bool:
    return isinstance(event, dict) and ("httpMethod" in event or "requestContext" in event)


def _raw_body(event: Dict[str, Any]) -> Optional[str]:
    """Request body as text (base64 decoded); None when absent or blank."""
    raw = event.get("body")
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return json.dumps(raw)
    text = str(raw)
    if event.get("isBase64Encoded"):
        try:
            text = base64.b64decode(text).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ValueError("Invalid base64 body") from exc
    return text if text.strip() else None


def _parse_body(event: Dict[str, Any]) -> Any:
    """Parse the JSON body. Returns None for an empty body, raises ValueError when malformed."""
    text = _raw_body(event)
    if text is None:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ValueError("Invalid JSON body") from exc


def _path_method(event: Dict[str, Any]) -> Tuple[Optional[str], str]:
    """Extract HTTP method (None when absent) and path from an API Gateway event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = str(event.get("httpMethod") or http.get("method") or "").strip().upper() or None
    path = event.get("path") or event.get("rawPath") or http.get("path") or ""
    return method, str(path)


def _header(event: Dict[str, Any], name: str) -> str:
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if str(key).lower() == wanted and value is not None:
            return str(value).strip()
    return ""


def _query_param(event: Dict[str, Any], name: str) -> Optional[str]:
    params = event.get("queryStringParameters") or {}
    value = params.get(name)
    return None if value is None else str(value)


def _path_param(event: Dict[str, Any], name: str) -> Optional[str]:
    params = event.get("pathParameters") or {}
    value = params.get(name)
    return None if value is None else str(value)
