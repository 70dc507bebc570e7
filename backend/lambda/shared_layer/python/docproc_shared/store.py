"""docproc_shared.store — Base class for DynamoDB-backed store adapters.

Stores are constructed with an explicit low-level DynamoDB client and own no
module-level state, so handlers can build them per container and tests can
hand in a MagicMock. Subclasses keep their table names and entity rules;
this base only knows how to get/put/update/delete/scan/query plain dicts.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from botocore.exceptions import ClientError

from .errors import NotFoundError
from .expressions import Cond, ExpressionCompiler, Node, build_filter, build_set_update
from .serialization import _deserialize, _serialize, _serialize_item

logger = logging.getLogger(__name__)

BATCH_WRITE_CHUNK = 25


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _is_missing_index(exc: ClientError) -> bool:
    """True for the ValidationException DynamoDB raises on an unknown GSI."""
    if _error_code(exc) != "ValidationException":
        return False
    message = exc.response.get("Error", {}).get("Message", "")
    return "index" in message.lower()


class DynamoStore:
    def __init__(self, ddb):
        self._ddb = ddb

    @property
    def ddb(self):
        if self._ddb is None:
            raise RuntimeError(f"{type(self).__name__} is closed")
        return self._ddb

    def close(self) -> None:
        self._ddb = None

    # ------------------------------------------------------------------
    # Single-item operations
    # ------------------------------------------------------------------

    def _get(self, table: str, key_value: str, key: str = "id") -> Optional[Dict[str, Any]]:
        resp = self.ddb.get_item(TableName=table, Key={key: _serialize(key_value)})
        item = resp.get("Item")
        return _deserialize(item) if item else None

    def _put(self, table: str, item: Dict[str, Any], condition: Optional[Node] = None) -> None:
        params: Dict[str, Any] = {"TableName": table, "Item": _serialize_item(item)}
        if condition is not None:
            compiler = ExpressionCompiler()
            params["ConditionExpression"] = compiler.condition(condition)
            params.update(compiler.params())
        self.ddb.put_item(**params)

    def _delete(self, table: str, key_value: str, key: str = "id") -> None:
        self.ddb.delete_item(TableName=table, Key={key: _serialize(key_value)})

    def _update(
        self,
        table: str,
        key_value: str,
        updates: Dict[str, Any],
        *,
        skip: Sequence[str] = ("id",),
        timestamp: Any,
        key: str = "id",
        must_exist: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """Partial update; returns the full new record, or None for a no-op.

        With `must_exist` the write is conditional on the record existing, so
        an update never upserts a phantom record; a miss raises NotFoundError.
        """
        compiler = ExpressionCompiler()
        spec = build_set_update(
            updates,
            skip=tuple(skip) + (key,),
            timestamp=timestamp,
            compiler=compiler,
        )
        if spec is None:
            return None
        params: Dict[str, Any] = {
            "TableName": table,
            "Key": {key: _serialize(key_value)},
            "ReturnValues": "ALL_NEW",
            "UpdateExpression": spec.expression,
        }
        if must_exist:
            params["ConditionExpression"] = compiler.condition(Cond(key, "exists"))
        params.update(compiler.params())
        try:
            resp = self.ddb.update_item(**params)
        except ClientError as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                raise NotFoundError(f"Record not found: {key_value}", table, key_value) from exc
            raise
        return _deserialize(resp.get("Attributes") or {})

    # ------------------------------------------------------------------
    # Multi-item operations
    # ------------------------------------------------------------------

    def _batch_put(self, table: str, items: Iterable[Dict[str, Any]]) -> int:
        """Write items in chunks of 25; unprocessed items are retried once.

        Returns the number of items that could not be written.
        """
        pending = [{"PutRequest": {"Item": _serialize_item(item)}} for item in items]
        failed = 0
        for start in range(0, len(pending), BATCH_WRITE_CHUNK):
            chunk = pending[start:start + BATCH_WRITE_CHUNK]
            resp = self.ddb.batch_write_item(RequestItems={table: chunk})
            unprocessed = (resp.get("UnprocessedItems") or {}).get(table) or []
            if unprocessed:
                resp = self.ddb.batch_write_item(RequestItems={table: unprocessed})
                unprocessed = (resp.get("UnprocessedItems") or {}).get(table) or []
            if unprocessed:
                logger.error(
                    "batch write to %s left %d unprocessed items", table, len(unprocessed)
                )
                failed += len(unprocessed)
        return failed

    def _scan(
        self,
        table: str,
        filter_node: Optional[Node] = None,
        limit: Optional[int] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Scan (all pages unless limited). Returns (items, scanned_count)."""
        params: Dict[str, Any] = {"TableName": table}
        if filter_node is not None:
            compiler = ExpressionCompiler()
            params["FilterExpression"] = compiler.condition(filter_node)
            params.update(compiler.params())
        if limit:
            params["Limit"] = int(limit)

        items: List[Dict[str, Any]] = []
        scanned = 0
        while True:
            resp = self.ddb.scan(**params)
            items.extend(_deserialize(i) for i in resp.get("Items", []))
            scanned += int(resp.get("ScannedCount", 0) or 0)
            last_key = resp.get("LastEvaluatedKey")
            if not last_key or (limit and len(items) >= limit):
                break
            params["ExclusiveStartKey"] = last_key
        if limit:
            items = items[:limit]
        return items, scanned

    def _query_index(
        self,
        table: str,
        index: str,
        key_field: str,
        key_value: Any,
        filter_node: Optional[Node] = None,
    ) -> List[Dict[str, Any]]:
        """Query a GSI by equality; scan with the same predicate if the index is missing."""
        compiler = ExpressionCompiler()
        params: Dict[str, Any] = {
            "TableName": table,
            "IndexName": index,
            "KeyConditionExpression": compiler.condition(Cond(key_field, "eq", key_value)),
        }
        if filter_node is not None:
            params["FilterExpression"] = compiler.condition(filter_node)
        params.update(compiler.params())

        items: List[Dict[str, Any]] = []
        try:
            while True:
                resp = self.ddb.query(**params)
                items.extend(_deserialize(i) for i in resp.get("Items", []))
                last_key = resp.get("LastEvaluatedKey")
                if not last_key:
                    break
                params["ExclusiveStartKey"] = last_key
        except ClientError as exc:
            if not _is_missing_index(exc):
                raise
            logger.warning("index %s missing on %s; falling back to scan", index, table)
            fallback = build_filter([Cond(key_field, "eq", key_value), filter_node])
            items, _ = self._scan(table, fallback)
        return items
