"""scan_engine_shared.store — Orchestration record persistence.

The store offers one concurrency primitive: ``conditional_update(request_id,
mutations, predicate)``. Mutations are attribute paths to values, the
predicate is a sequence of conditions that must all hold on the current item.
The DynamoDB implementation compiles both into a single UpdateItem call, so
the check and the write are atomic on the item.

Writes report a ``StoreResult``; conditional rejections are never raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from botocore.exceptions import ClientError

from scan_engine_shared.models import FinalStatus, OrchestrationRecord, StoreResult
from scan_engine_shared.serialization import _deserialize, _serialize

logger = logging.getLogger(__name__)

Path = Tuple[str, ...]

# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Equals:
    path: Path
    value: str


@dataclass(frozen=True)
class EqualsOrAbsent:
    """Holds when the attribute is missing or equal to ``value``."""

    path: Path
    value: str


@dataclass(frozen=True)
class DiffersOrAbsent:
    """Holds when the attribute is missing or not equal to ``value``."""

    path: Path
    value: str


@dataclass(frozen=True)
class Exists:
    path: Path


@dataclass(frozen=True)
class Absent:
    path: Path


Condition = Union[Equals, EqualsOrAbsent, DiffersOrAbsent, Exists, Absent]

REQUEST_ID: Path = ("requestId",)
FINAL_STATUS: Path = ("finalStatus",)


def engine_path(worker: str) -> Path:
    return ("engine", worker)


def outputs_path(worker: str) -> Path:
    return ("outputs", worker)


def merge_claim_predicate(workers: Sequence[str]) -> List[Condition]:
    """``finalStatus`` still pending and every configured worker DONE."""
    predicate: List[Condition] = [EqualsOrAbsent(FINAL_STATUS, FinalStatus.PENDING.value)]
    predicate.extend(Equals(engine_path(name), "DONE") for name in workers)
    return predicate


def _is_conditional_check_failed(exc: Exception) -> bool:
    if not isinstance(exc, ClientError):
        return False
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


# ---------------------------------------------------------------------------
# Expression building
# ---------------------------------------------------------------------------


class _ExpressionBuilder:
    """Allocates #name / :value placeholders for one DynamoDB request."""

    def __init__(self) -> None:
        self.names: Dict[str, str] = {}
        self.values: Dict[str, Dict[str, Any]] = {}
        self._name_aliases: Dict[str, str] = {}

    def path(self, path: Path) -> str:
        parts = []
        for segment in path:
            alias = self._name_aliases.get(segment)
            if alias is None:
                alias = f"#a{len(self._name_aliases)}"
                self._name_aliases[segment] = alias
                self.names[alias] = segment
            parts.append(alias)
        return ".".join(parts)

    def value(self, value: Any) -> str:
        alias = f":v{len(self.values)}"
        self.values[alias] = _serialize(value)
        return alias

    def condition(self, cond: Condition) -> str:
        ref = self.path(cond.path)
        if isinstance(cond, Equals):
            return f"{ref} = {self.value(cond.value)}"
        if isinstance(cond, EqualsOrAbsent):
            return f"(attribute_not_exists({ref}) OR {ref} = {self.value(cond.value)})"
        if isinstance(cond, DiffersOrAbsent):
            return f"(attribute_not_exists({ref}) OR {ref} <> {self.value(cond.value)})"
        if isinstance(cond, Exists):
            return f"attribute_exists({ref})"
        if isinstance(cond, Absent):
            return f"attribute_not_exists({ref})"
        raise TypeError(f"Unsupported condition: {cond!r}")

    def condition_expression(self, predicate: Sequence[Condition]) -> str:
        return " AND ".join(self.condition(cond) for cond in predicate)

    def update_expression(self, mutations: Mapping[Path, Any]) -> str:
        assignments = [f"{self.path(path)} = {self.value(value)}" for path, value in mutations.items()]
        return "SET " + ", ".join(assignments)


# ---------------------------------------------------------------------------
# DynamoDB implementation
# ---------------------------------------------------------------------------


class DynamoDbOrchestrationStore:
    def __init__(self, ddb, table_name: str):
        if ddb is None:
            raise ValueError("ddb client is required")
        if not table_name or not str(table_name).strip():
            raise ValueError("DynamoDB table name is required")
        self._ddb = ddb
        self.table_name = table_name

    @staticmethod
    def _key(request_id: str) -> Dict[str, Any]:
        return {"requestId": _serialize(request_id)}

    def create_record(self, record: OrchestrationRecord) -> StoreResult:
        item = {k: _serialize(v) for k, v in record.to_item().items()}
        try:
            self._ddb.put_item(
                TableName=self.table_name,
                Item=item,
                ConditionExpression="attribute_not_exists(#rid)",
                ExpressionAttributeNames={"#rid": "requestId"},
            )
        except ClientError as exc:
            if _is_conditional_check_failed(exc):
                return StoreResult.CONFLICT
            raise
        return StoreResult.OK

    def get_record(self, request_id: str) -> Optional[OrchestrationRecord]:
        resp = self._ddb.get_item(
            TableName=self.table_name,
            Key=self._key(request_id),
            ConsistentRead=True,
        )
        raw = resp.get("Item")
        if not raw:
            return None
        return OrchestrationRecord.from_item(_deserialize(raw))

    def conditional_update(
        self,
        request_id: str,
        mutations: Mapping[Path, Any],
        predicate: Sequence[Condition] = (),
    ) -> StoreResult:
        if not mutations:
            raise ValueError("at least one mutation is required")
        builder = _ExpressionBuilder()
        update_expr = builder.update_expression(mutations)
        condition_expr = builder.condition_expression([Exists(REQUEST_ID), *predicate])
        try:
            self._ddb.update_item(
                TableName=self.table_name,
                Key=self._key(request_id),
                UpdateExpression=update_expr,
                ConditionExpression=condition_expr,
                ExpressionAttributeNames=builder.names,
                ExpressionAttributeValues=builder.values,
                ReturnValuesOnConditionCheckFailure="ALL_OLD",
            )
        except ClientError as exc:
            if not _is_conditional_check_failed(exc):
                raise
            if exc.response.get("Item"):
                return StoreResult.PRECONDITION_FAILED
            return StoreResult.NOT_FOUND
        return StoreResult.OK

    def scan_unfinished(self, page_size: int = 100) -> Iterator[OrchestrationRecord]:
        """Yield every record whose finalStatus is not DONE."""
        kwargs: Dict[str, Any] = {
            "TableName": self.table_name,
            "FilterExpression": "attribute_not_exists(#fs) OR #fs <> :done",
            "ExpressionAttributeNames": {"#fs": "finalStatus"},
            "ExpressionAttributeValues": {":done": {"S": FinalStatus.DONE.value}},
            "Limit": page_size,
        }
        while True:
            resp = self._ddb.scan(**kwargs)
            for raw in resp.get("Items", []):
                try:
                    yield OrchestrationRecord.from_item(_deserialize(raw))
                except (KeyError, ValueError):
                    logger.warning("Skipping malformed orchestration item: %s", raw.get("requestId"))
            if "LastEvaluatedKey" not in resp:
                break
            kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
