"""query.py — Read-only status and findings views over an orchestration.

Part of scan_api.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from scan_engine_shared.models import FinalStatus

__all__ = [
    "DEFAULT_PAGE",
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "QueryKind",
    "QueryResult",
    "QueryService",
    "extract_items",
    "paginate",
    "parse_positive_int",
]

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


class QueryKind(str, Enum):
    READY = "READY"
    PENDING = "PENDING"
    NOT_FOUND = "NOT_FOUND"


@dataclass
class QueryResult:
    kind: QueryKind
    body: Dict[str, Any] = field(default_factory=dict)
    message: str = ""


def parse_positive_int(raw: Any, fallback: int) -> int:
    if raw is None or not str(raw).strip():
        return fallback
    try:
        value = int(str(raw).strip())
    except ValueError:
        return fallback
    return value if value > 0 else fallback


def extract_items(document: Any) -> List[Any]:
    """Item list of a merged document.

    Arrays are used as-is, objects with an ``items`` array contribute that
    array, anything else counts as a single item.
    """
    if isinstance(document, list):
        return document
    if isinstance(document, dict) and isinstance(document.get("items"), list):
        return document["items"]
    return [document]


def paginate(document: Any, page: Any = None, size: Any = None) -> Dict[str, Any]:
    items = extract_items(document)
    page_num = parse_positive_int(page, DEFAULT_PAGE)
    page_size = min(parse_positive_int(size, DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)
    total = len(items)
    start = min(total, (page_num - 1) * page_size)
    end = min(total, start + page_size)
    return {
        "page": page_num,
        "size": page_size,
        "total": total,
        "items": items[start:end],
    }


class QueryService:
    def __init__(self, store, blobs, merged_bucket: str):
        if not merged_bucket:
            raise ValueError("merged bucket is required")
        self._store = store
        self._blobs = blobs
        self.merged_bucket = merged_bucket

    def get_status(self, request_id: str) -> QueryResult:
        record = self._store.get_record(request_id)
        if record is None:
            return QueryResult(QueryKind.NOT_FOUND, message="requestId not found")
        return QueryResult(
            QueryKind.READY,
            {
                "requestId": request_id,
                "engine": record.engine,
                "finalStatus": record.final_status.value,
                "mergedKey": record.merged_key,
            },
        )

    def get_results(
        self,
        request_id: str,
        key: Optional[str] = None,
        page: Any = None,
        size: Any = None,
    ) -> QueryResult:
        record = self._store.get_record(request_id)
        if record is None:
            return QueryResult(QueryKind.NOT_FOUND, message="requestId not found")

        if record.final_status != FinalStatus.DONE:
            return QueryResult(
                QueryKind.PENDING,
                {
                    "requestId": request_id,
                    "finalStatus": FinalStatus.PENDING.value,
                    "engine": record.engine,
                },
            )

        object_key = (key or "").strip() or record.merged_key or f"{request_id}.json"
        document = self._blobs.get_json(self.merged_bucket, object_key)
        if document is None:
            logger.warning("Merged findings missing. requestId=%s key=%s", request_id, object_key)
            return QueryResult(QueryKind.NOT_FOUND, message="findings not found")

        body = {"requestId": request_id, "mergedKey": object_key}
        body.update(paginate(document, page, size))
        return QueryResult(QueryKind.READY, body)
