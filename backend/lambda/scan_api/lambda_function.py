"""scan_api/lambda_function.py

Entry point for submitting scans and reading their progress.

Routes (API Gateway REST or HTTP API):
    POST    .../scan                      — dispatch (202 {requestId, messageIds})
    GET     .../status/{requestId}        — engine map and final status
    GET     .../findings/{requestId}      — merged findings, ?key=&page=&size=
    OPTIONS *                             — CORS preflight

Any event that is not HTTP-shaped (no httpMethod / requestContext) is a raw
invocation and is dispatched directly; its return value is the dispatch
result.

Flow:
    Client → This Lambda → DynamoDB record (engine = IN_PROGRESS per worker)
    → SQS work queue per worker

Environment variables:
    ORCHESTRATION_TABLE    default: scan-orchestration
    EXPECTED_WORKERS       default: service-a,service-b
    WORKER_QUEUE_URLS      JSON object worker -> queue URL
    MERGED_BUCKET          default: scan-engine-orchestrated
    CORS_ORIGIN            default: *
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from scan_engine_shared import config
from scan_engine_shared.aws_clients import _get_ddb, _get_s3, _get_sqs
from scan_engine_shared.blob import S3BlobStore
from scan_engine_shared.http_utils import (
    _error,
    _header,
    _is_http_event,
    _parse_body,
    _path_method,
    _path_param,
    _query_param,
    _response,
)
from scan_engine_shared.models import DispatchError, IdempotencyConflict, InvalidPayload
from scan_engine_shared.queues import SqsQueue
from scan_engine_shared.store import DynamoDbOrchestrationStore

from dispatch import DispatchService
from query import QueryKind, QueryResult, QueryService

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Services (built once per container)
# ---------------------------------------------------------------------------

_store = None
_dispatch_service = None
_query_service = None


def _get_store() -> DynamoDbOrchestrationStore:
    global _store
    if _store is None:
        _store = DynamoDbOrchestrationStore(_get_ddb(), config.ORCHESTRATION_TABLE)
    return _store


def _get_dispatch_service() -> DispatchService:
    global _dispatch_service
    if _dispatch_service is None:
        registry = config.default_worker_registry()
        publishers = {target.name: SqsQueue(_get_sqs(), target.queue_url) for target in registry}
        _dispatch_service = DispatchService(_get_store(), publishers)
    return _dispatch_service


def _get_query_service() -> QueryService:
    global _query_service
    if _query_service is None:
        _query_service = QueryService(_get_store(), S3BlobStore(_get_s3()), config.MERGED_BUCKET)
    return _query_service


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_SCAN_PATTERN = re.compile(r"/scan/?$")
_STATUS_PATTERN = re.compile(r"/status(?:/(?P<requestId>[^/]+))?/?$")
_FINDINGS_PATTERN = re.compile(r"/findings(?:/(?P<requestId>[^/]+))?/?$")


def _extract_request_id(event: Dict[str, Any], match: Optional[re.Match]) -> str:
    for candidate in (
        _path_param(event, "requestId"),
        _query_param(event, "requestId"),
        match.group("requestId") if match else None,
    ):
        if candidate and candidate.strip():
            return candidate.strip()
    return ""


def _query_response(result: QueryResult) -> Dict[str, Any]:
    if result.kind == QueryKind.NOT_FOUND:
        return _error(404, result.message or "Not found")
    if result.kind == QueryKind.PENDING:
        return _response(202, result.body)
    return _response(200, result.body)


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _handle_submit(event: Dict[str, Any]) -> Dict[str, Any]:
    try:
        body = _parse_body(event)
    except ValueError as exc:
        return _error(400, str(exc))
    if body is None:
        return _error(400, "payload is required")
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object")

    idempotency_key = _header(event, "Idempotency-Key")
    try:
        result = _get_dispatch_service().dispatch(body, idempotency_key=idempotency_key or None)
    except InvalidPayload as exc:
        return _error(400, str(exc))
    except IdempotencyConflict as exc:
        return _error(409, str(exc))
    except DispatchError as exc:
        logger.error(f"[ERROR] Partial fan-out: {exc}")
        return _error(500, "Failed to dispatch scan", requestId=exc.request_id)
    return _response(202, result)


def _handle_status(event: Dict[str, Any], match: Optional[re.Match]) -> Dict[str, Any]:
    request_id = _extract_request_id(event, match)
    if not request_id:
        return _error(400, "requestId is required")
    return _query_response(_get_query_service().get_status(request_id))


def _handle_findings(event: Dict[str, Any], match: Optional[re.Match]) -> Dict[str, Any]:
    request_id = _extract_request_id(event, match)
    if not request_id:
        return _error(400, "requestId is required")
    result = _get_query_service().get_results(
        request_id,
        key=_query_param(event, "key"),
        page=_query_param(event, "page"),
        size=_query_param(event, "size"),
    )
    return _query_response(result)


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Any, context: Any) -> Dict[str, Any]:
    """Main Lambda entry point."""
    if not _is_http_event(event):
        logger.info("scan_api: raw dispatch invocation")
        return _get_dispatch_service().dispatch(event)

    method, path = _path_method(event)
    logger.info(f"scan_api: {method} {path}")

    if not method:
        return _error(400, "httpMethod is required")
    if method == "OPTIONS":
        return _response(204, "")

    try:
        if method == "POST" and _SCAN_PATTERN.search(path):
            return _handle_submit(event)

        if method == "GET":
            m = _STATUS_PATTERN.search(path)
            if m:
                return _handle_status(event, m)
            m = _FINDINGS_PATTERN.search(path)
            if m:
                return _handle_findings(event, m)

        return _error(404, f"Route not found: {method} {path}")

    except (ClientError, BotoCoreError) as e:
        logger.error(f"AWS error: {e}", exc_info=True)
        return _error(500, "Internal server error")
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return _error(500, "Internal server error")
