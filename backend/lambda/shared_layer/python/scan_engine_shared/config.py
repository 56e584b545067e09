"""scan_engine_shared.config — Environment configuration and the worker registry.

Every component reads its settings here. Module-level values are resolved
once at import; callers (and tests) may override them on the module.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


def parse_worker_names(raw: Optional[str]) -> Tuple[str, ...]:
    """Return the expected worker set from a comma-separated value.

    Entries are trimmed, blanks dropped and duplicates removed. The result is
    sorted so two deployments listing the same workers in a different order
    agree on everything derived from it.
    """
    names: set[str] = set()
    for part in str(raw or "").split(","):
        name = part.strip()
        if name:
            names.add(name)
    return tuple(sorted(names))


def parse_json_map(raw: Optional[str], setting: str = "") -> Dict[str, str]:
    """Parse a JSON object of string -> string from an env value."""
    if not raw or not str(raw).strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{setting or 'setting'} must be a JSON object: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"{setting or 'setting'} must be a JSON object")
    out: Dict[str, str] = {}
    for key, value in parsed.items():
        name = str(key or "").strip()
        target = str(value or "").strip()
        if name and target:
            out[name] = target
    return out


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if str(raw).strip() else default
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw) if str(raw).strip() else default
    except ValueError:
        logger.warning("Invalid number for %s=%r; using %s", name, raw, default)
        return default


# ---------------------------------------------------------------------------
# Configuration (read from env)
# ---------------------------------------------------------------------------

REGION: str = os.environ.get("SCAN_ENGINE_REGION", os.environ.get("AWS_REGION", "us-west-2"))
ORCHESTRATION_TABLE: str = os.environ.get("ORCHESTRATION_TABLE", "scan-orchestration")
EXPECTED_WORKERS: Tuple[str, ...] = parse_worker_names(
    os.environ.get("EXPECTED_WORKERS", "service-a,service-b")
)
WORKER_QUEUE_URLS: Dict[str, str] = parse_json_map(
    os.environ.get("WORKER_QUEUE_URLS", ""), "WORKER_QUEUE_URLS"
)
WORKER_BUCKETS: Dict[str, str] = parse_json_map(
    os.environ.get("WORKER_BUCKETS", ""), "WORKER_BUCKETS"
)
PAYLOAD_BUCKET: str = os.environ.get("PAYLOAD_BUCKET", "scan-engine-payloads")
MERGE_QUEUE_URL: str = os.environ.get("MERGE_QUEUE_URL", "")
MERGED_BUCKET: str = os.environ.get("MERGED_BUCKET", "scan-engine-orchestrated")

# Engine worker identity
WORKER_NAME: str = os.environ.get("WORKER_NAME", "").strip()
WORKER_QUEUE_URL: str = os.environ.get("WORKER_QUEUE_URL", "")
WORKER_BUCKET: str = os.environ.get("WORKER_BUCKET", "")

# Polling
POLL_WAIT_SECONDS: int = _env_int("POLL_WAIT_SECONDS", 20)
POLL_MAX_MESSAGES: int = _env_int("POLL_MAX_MESSAGES", 10)
MERGE_POLL_MAX_MESSAGES: int = _env_int("MERGE_POLL_MAX_MESSAGES", 5)
POLL_ERROR_BACKOFF_SECONDS: float = _env_float("POLL_ERROR_BACKOFF_SECONDS", 5.0)
MERGE_IDLE_SLEEP_SECONDS: float = _env_float("MERGE_IDLE_SLEEP_SECONDS", 40.0)
PROCESSING_DELAY_MIN_SECONDS: float = _env_float("PROCESSING_DELAY_MIN_SECONDS", 180.0)
PROCESSING_DELAY_MAX_SECONDS: float = _env_float("PROCESSING_DELAY_MAX_SECONDS", 300.0)

# Stuck-request sweep
STUCK_REQUEST_AFTER_SECONDS: int = _env_int("STUCK_REQUEST_AFTER_SECONDS", 3600)
STUCK_ALERT_TOPIC_ARN: str = os.environ.get("STUCK_ALERT_TOPIC_ARN", "")
STUCK_SWEEP_REDRIVE_MERGING: bool = (
    os.environ.get("STUCK_SWEEP_REDRIVE_MERGING", "true").strip().lower() == "true"
)

CORS_ORIGIN: str = os.environ.get("CORS_ORIGIN", "*")


# ---------------------------------------------------------------------------
# Worker registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkerTarget:
    name: str
    queue_url: str
    bucket: str


def build_worker_registry(
    names: Iterable[str],
    queue_urls: Mapping[str, str],
    buckets: Optional[Mapping[str, str]] = None,
    default_bucket: str = "",
    *,
    require_queues: bool = True,
) -> Tuple[WorkerTarget, ...]:
    """Build the ordered registry of configured workers.

    Raises ValueError when a worker has no queue URL (and ``require_queues``
    is set) or no bucket at all.
    """
    buckets = buckets or {}
    ordered = parse_worker_names(",".join(names))
    if not ordered:
        raise ValueError("EXPECTED_WORKERS is empty")

    targets = []
    missing_queues = []
    for name in ordered:
        queue_url = queue_urls.get(name, "")
        if not queue_url and require_queues:
            missing_queues.append(name)
        bucket = buckets.get(name) or default_bucket
        if not bucket:
            raise ValueError(f"No bucket configured for worker '{name}'")
        targets.append(WorkerTarget(name=name, queue_url=queue_url, bucket=bucket))

    if missing_queues:
        raise ValueError(f"No queue URL configured for worker(s): {', '.join(missing_queues)}")
    return tuple(targets)


def default_worker_registry(*, require_queues: bool = True) -> Tuple[WorkerTarget, ...]:
    """Registry from the module-level environment settings."""
    return build_worker_registry(
        EXPECTED_WORKERS,
        WORKER_QUEUE_URLS,
        WORKER_BUCKETS,
        PAYLOAD_BUCKET,
        require_queues=require_queues,
    )
