import datetime as dt
import importlib.util
import json
import logging
import os
import sys
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "shared_layer", "python"))

_spec = importlib.util.spec_from_file_location(
    "stuck_request_sweep_lambda",
    os.path.join(os.path.dirname(__file__), "lambda_function.py"),
)
mod = importlib.util.module_from_spec(_spec)
sys.modules[_spec.name] = mod
_spec.loader.exec_module(mod)

from scan_engine_shared.memory import InMemoryOrchestrationStore, InMemoryQueue  # noqa: E402
from scan_engine_shared.merge_trigger import MergeTrigger  # noqa: E402
from scan_engine_shared.models import OrchestrationRecord  # noqa: E402
from scan_engine_shared.store import FINAL_STATUS, engine_path  # noqa: E402

NOW = dt.datetime(2026, 1, 1, 12, 0, 0, tzinfo=dt.timezone.utc)
OLD = "2026-01-01T10:00:00Z"
RECENT = "2026-01-01T11:59:00Z"
WORKERS = ["service-a", "service-b"]


def _store_with(*records):
    store = InMemoryOrchestrationStore()
    for request_id, created_at, final_status in records:
        store.create_record(OrchestrationRecord.start(request_id, WORKERS, created_at))
        if final_status in ("MERGING", "DONE"):
            for name in WORKERS:
                store.conditional_update(request_id, {engine_path(name): "DONE"})
            store.conditional_update(request_id, {FINAL_STATUS: final_status})
    return store


def test_is_stuck_uses_created_at_and_threshold():
    old = OrchestrationRecord.start("r1", WORKERS, OLD)
    recent = OrchestrationRecord.start("r2", WORKERS, RECENT)
    unknown_age = OrchestrationRecord(request_id="r3", engine={})

    assert mod.is_stuck(old, NOW, 3600) is True
    assert mod.is_stuck(recent, NOW, 3600) is False
    assert mod.is_stuck(unknown_age, NOW, 3600) is False


def test_pending_request_is_annotated_once(caplog):
    store = _store_with(("old", OLD, "PENDING"), ("fresh", RECENT, "PENDING"))
    store.conditional_update("old", {engine_path("service-a"): "DONE"})

    with caplog.at_level(logging.WARNING):
        first = mod.sweep(store, NOW, threshold_seconds=3600)
    second = mod.sweep(store, NOW, threshold_seconds=3600)

    assert first == {"scanned": 2, "stuck": 1, "redriven": 0}
    assert second == {"scanned": 2, "stuck": 0, "redriven": 0}
    assert store.raw_item("old")["stuckDetectedAt"] == "2026-01-01T12:00:00Z"
    assert "stuckDetectedAt" not in store.raw_item("fresh")
    assert "finalStatus" not in store.raw_item("old")
    assert any("requestId=old" in r.getMessage() and "pendingWorkers=service-b" in r.getMessage() for r in caplog.records)


def test_done_requests_are_ignored():
    store = _store_with(("done", OLD, "DONE"))
    assert mod.sweep(store, NOW, threshold_seconds=3600) == {"scanned": 0, "stuck": 0, "redriven": 0}


def test_merging_request_gets_merge_trigger_redriven():
    store = _store_with(("merging", OLD, "MERGING"), ("pending", OLD, "PENDING"))
    merge_queue = InMemoryQueue("merge")
    trigger = MergeTrigger(store, merge_queue, WORKERS)

    result = mod.sweep(store, NOW, threshold_seconds=3600, trigger=trigger)

    assert result["redriven"] == 1
    assert [json.loads(body) for _, body in merge_queue.sent] == [{"requestId": "merging"}]
    assert store.raw_item("merging")["finalStatus"] == "MERGING"


def test_alert_published_once_per_run(monkeypatch):
    sns = MagicMock()
    monkeypatch.setattr(mod, "_get_sns", lambda: sns)
    store = _store_with(("a", OLD, "PENDING"), ("b", OLD, "PENDING"))

    mod.sweep(store, NOW, threshold_seconds=3600, topic_arn="arn:aws:sns:us-west-2:123:stuck")
    mod.sweep(store, NOW, threshold_seconds=3600, topic_arn="arn:aws:sns:us-west-2:123:stuck")

    assert sns.publish.call_count == 1
    kwargs = sns.publish.call_args.kwargs
    assert kwargs["TopicArn"] == "arn:aws:sns:us-west-2:123:stuck"
    alert = json.loads(kwargs["Message"])
    assert alert["count"] == 2
    assert sorted(r["requestId"] for r in alert["requests"]) == ["a", "b"]


def test_alert_failure_does_not_fail_sweep(monkeypatch):
    sns = MagicMock()
    sns.publish.side_effect = RuntimeError("sns down")
    monkeypatch.setattr(mod, "_get_sns", lambda: sns)
    store = _store_with(("a", OLD, "PENDING"))

    result = mod.sweep(store, NOW, threshold_seconds=3600, topic_arn="arn:topic")

    assert result["stuck"] == 1


def test_handler_scans_table(monkeypatch):
    ddb = MagicMock()
    ddb.scan.return_value = {"Items": []}
    monkeypatch.setattr(mod, "_get_ddb", lambda: ddb)
    monkeypatch.setattr(mod.config, "MERGE_QUEUE_URL", "")

    result = mod.lambda_handler({}, None)

    assert result == {"scanned": 0, "stuck": 0, "redriven": 0}
    assert ddb.scan.call_args.kwargs["TableName"] == mod.config.ORCHESTRATION_TABLE
