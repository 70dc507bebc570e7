"""lambda_function.py — Classification feedback API.

Stores user corrections of document classifications, keeps an immutable
audit trail of edits, reports per-type training statistics and holds the
auto-retraining settings singleton.

Routes (matched on the path tail):
    GET   /feedback                                        list with filters
    POST  /feedback                                        create
    POST  /feedback/update                                 update + audit entry
    GET   /feedback/audit                                  audit trail
    POST  /train-models/classification-feedback            create
    GET   /train-models/classification-feedback/by-doctype
    GET   /train-models/classification-feedback/stats
    GET   /comprehend/auto-retrain-toggle
    POST  /comprehend/auto-retrain-toggle

Environment variables:
    DYNAMODB_FEEDBACK_TABLE           default: ClassificationFeedback
    DYNAMODB_AUDIT_TABLE              default: FeedbackAudit
    DYNAMODB_TRAINING_CONFIG_TABLE    default: ModelTrainingConfig
    APP_REGION / DYNAMODB_REGION      DynamoDB region
"""

from __future__ import annotations

import logging
import math
import os
import re
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from docproc_shared.auth import _authenticate
from docproc_shared.aws_clients import _get_ddb
from docproc_shared.errors import NotFoundError, ValidationError
from docproc_shared.expressions import Cond, Or, build_filter, range_condition
from docproc_shared.http_utils import _error, _parse_body, _path_method, _preflight, _query_params, _response
from docproc_shared.serialization import _new_id, _now_ms, _serialize
from docproc_shared.store import DynamoStore

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

APP_REGION = os.environ.get("APP_REGION", os.environ.get("DYNAMODB_REGION", ""))
FEEDBACK_TABLE = os.environ.get(
    "DYNAMODB_FEEDBACK_TABLE",
    os.environ.get("DYNAMODB_CLASSIFICATION_FEEDBACK_TABLE", "ClassificationFeedback"),
)
AUDIT_TABLE = os.environ.get("DYNAMODB_AUDIT_TABLE", "FeedbackAudit")
TRAINING_CONFIG_TABLE = os.environ.get("DYNAMODB_TRAINING_CONFIG_TABLE", "ModelTrainingConfig")

TRAINING_CONFIG_ID = "training-config"
DEFAULT_FEEDBACK_THRESHOLD = 50
DEFAULT_AUDIT_LIMIT = 50
RECENT_FEEDBACK_LIMIT = 100
FEEDBACK_SOURCES = ("auto", "manual", "review")

logger = logging.getLogger()
logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class FeedbackStore(DynamoStore):
    def __init__(self, ddb, feedback_table: str, audit_table: str, training_table: str):
        super().__init__(ddb)
        self.feedback_table = feedback_table
        self.audit_table = audit_table
        self.training_table = training_table

    # -- feedback ----------------------------------------------------------

    def list_feedback(self, filters: Dict[str, Any], limit: Optional[int] = None) -> Dict[str, Any]:
        """Scan with every supplied filter AND-combined.

        `documentType` matches either the original or the corrected type;
        confidence and date bounds are inclusive.
        """
        doc_type = filters.get("documentType")
        node = build_filter([
            Or(
                Cond("originalClassification.documentType", "eq", doc_type),
                Cond("correctedDocumentType", "eq", doc_type),
            ) if doc_type else None,
            Cond("status", "eq", filters["status"]) if filters.get("status") else None,
            range_condition(
                "originalClassification.confidence",
                filters.get("minConfidence"),
                filters.get("maxConfidence"),
            ),
            range_condition("timestamp", filters.get("startDate"), filters.get("endDate")),
        ])
        items, scanned = self._scan(self.feedback_table, node, limit=limit)
        return {"items": items, "count": len(items), "scannedCount": scanned}

    def get_feedback(self, feedback_id: str) -> Optional[Dict[str, Any]]:
        return self._get(self.feedback_table, feedback_id)

    def create_feedback(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if not body.get("documentId"):
            raise ValidationError("documentId is required")
        source = body.get("feedbackSource") or "manual"
        if source not in FEEDBACK_SOURCES:
            raise ValidationError("feedbackSource must be one of: " + ", ".join(FEEDBACK_SOURCES))
        record = {
            "id": _new_id(),
            "documentId": body["documentId"],
            "originalClassification": body.get("originalClassification"),
            "correctedDocumentType": body.get("correctedDocumentType"),
            "feedbackSource": source,
            "timestamp": body.get("timestamp") or _now_ms(),
            "hasBeenUsedForTraining": False,
            "status": "pending",
        }
        if body.get("documentSubType"):
            record["documentSubType"] = body["documentSubType"]
        self._put(self.feedback_table, record)
        self._bump_pending_count()
        logger.info("[INFO] feedback %s recorded for document %s", record["id"], record["documentId"])
        return record

    def _bump_pending_count(self) -> None:
        # Counter drift is tolerated; the feedback record is the source of truth.
        try:
            self.ddb.update_item(
                TableName=self.training_table,
                Key={"id": _serialize(TRAINING_CONFIG_ID)},
                UpdateExpression="ADD #p :one",
                ExpressionAttributeNames={"#p": "pendingFeedbackCount"},
                ExpressionAttributeValues={":one": _serialize(1)},
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("[WARNING] pendingFeedbackCount not incremented: %s", exc)

    def update_feedback(
        self, feedback_id: str, updates: Dict[str, Any], modified_by: str = "admin"
    ) -> Dict[str, Any]:
        """Apply the fields that actually change and append one audit entry.

        The audit entry is written after the update; if that write fails the
        update stands and the response carries `audit: None`.
        """
        current = self.get_feedback(feedback_id)
        if current is None:
            raise NotFoundError("Feedback record not found", "feedback", feedback_id)

        changes = [
            {"field": key, "oldValue": current.get(key), "newValue": value}
            for key, value in updates.items()
            if key != "id" and current.get(key) != value
        ]
        if not changes:
            return {"success": True, "message": "No changes to apply"}

        now = _now_ms()
        updated = self._update(
            self.feedback_table,
            feedback_id,
            {c["field"]: c["newValue"] for c in changes},
            timestamp=now,
        )
        audit = {
            "id": _new_id(),
            "feedbackId": feedback_id,
            "documentId": current.get("documentId"),
            "timestamp": now,
            "modifiedBy": modified_by or "admin",
            "changes": changes,
        }
        try:
            self._put(self.audit_table, audit, condition=Cond("id", "not_exists"))
        except (BotoCoreError, ClientError) as exc:
            logger.error("[ERROR] audit entry for feedback %s not written: %s", feedback_id, exc)
            audit = None
        return {"success": True, "feedback": updated, "audit": audit}

    def list_audit(
        self,
        feedback_id: Optional[str] = None,
        document_id: Optional[str] = None,
        limit: int = DEFAULT_AUDIT_LIMIT,
    ) -> Dict[str, Any]:
        node = build_filter([
            Cond("feedbackId", "eq", feedback_id) if feedback_id else None,
            Cond("documentId", "eq", document_id) if document_id else None,
        ])
        items, scanned = self._scan(self.audit_table, node, limit=limit)
        items.sort(key=lambda a: a.get("timestamp") or 0, reverse=True)
        return {"items": items, "count": len(items), "scannedCount": scanned}

    def feedback_by_doctype(self, doc_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if doc_type:
            items, _ = self._scan(self.feedback_table, Cond("correctedDocumentType", "contains", doc_type))
        else:
            items, _ = self._scan(self.feedback_table, limit=RECENT_FEEDBACK_LIMIT)
        rows = []
        for item in items:
            original = item.get("originalClassification") or {}
            rows.append({
                "id": item.get("id"),
                "documentId": item.get("documentId"),
                "originalType": original.get("documentType"),
                "correctedType": item.get("correctedDocumentType"),
                "documentSubType": item.get("documentSubType") or "General",
                "trained": bool(item.get("hasBeenUsedForTraining")),
                "timestamp": item.get("timestamp"),
                "confidence": original.get("confidence") or 0,
            })
        rows.sort(key=lambda r: r["timestamp"] or 0, reverse=True)
        return rows

    def feedback_stats(self) -> Dict[str, Any]:
        items, _ = self._scan(self.feedback_table)
        stats: Dict[str, Any] = {"total": len(items), "trained": 0, "untrained": 0, "byDocumentType": {}}
        for item in items:
            trained = item.get("hasBeenUsedForTraining") is True
            bucket = "trained" if trained else "untrained"
            doc_type = (
                item.get("correctedDocumentType")
                or (item.get("originalClassification") or {}).get("documentType")
                or "Unknown"
            )
            sub_type = item.get("documentSubType") or "General"

            by_type = stats["byDocumentType"].setdefault(
                doc_type, {"total": 0, "trained": 0, "untrained": 0, "bySubType": {}}
            )
            by_sub = by_type["bySubType"].setdefault(sub_type, {"total": 0, "trained": 0, "untrained": 0})
            stats[bucket] += 1
            for counts in (by_type, by_sub):
                counts["total"] += 1
                counts[bucket] += 1
        return stats

    # -- training config ---------------------------------------------------

    def get_training_config(self) -> Dict[str, Any]:
        config = self._get(self.training_table, TRAINING_CONFIG_ID)
        if config is None:
            return {
                "autoTrainingEnabled": False,
                "feedbackThreshold": DEFAULT_FEEDBACK_THRESHOLD,
                "pendingFeedbackCount": 0,
                "modelStatus": "IDLE",
            }
        return {
            "autoTrainingEnabled": bool(config.get("autoTrainingEnabled")),
            "feedbackThreshold": config.get("feedbackThreshold", DEFAULT_FEEDBACK_THRESHOLD),
            "pendingFeedbackCount": config.get("pendingFeedbackCount") or 0,
            "lastTrainingDate": config.get("lastTrainingDate"),
            "modelStatus": config.get("modelStatus") or "IDLE",
        }

    def set_auto_training(self, enabled: bool, threshold: Optional[int] = None) -> Dict[str, Any]:
        current = self._get(self.training_table, TRAINING_CONFIG_ID)
        if current is None:
            config = {
                "id": TRAINING_CONFIG_ID,
                "autoTrainingEnabled": enabled,
                "feedbackThreshold": threshold or DEFAULT_FEEDBACK_THRESHOLD,
                "pendingFeedbackCount": 0,
                "updatedAt": _now_ms(),
            }
            self._put(self.training_table, config)
            return config
        updates: Dict[str, Any] = {"autoTrainingEnabled": enabled}
        if threshold is not None:
            updates["feedbackThreshold"] = threshold
        return self._update(self.training_table, TRAINING_CONFIG_ID, updates, timestamp=_now_ms())


_store: Optional[FeedbackStore] = None


def _get_store() -> FeedbackStore:
    global _store
    if _store is None:
        _store = FeedbackStore(
            _get_ddb(APP_REGION or None), FEEDBACK_TABLE, AUDIT_TABLE, TRAINING_CONFIG_TABLE
        )
    return _store


def _reset_store() -> None:
    global _store
    if _store is not None:
        _store.close()
    _store = None


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _number_param(params: Dict[str, str], name: str, cast=float):
    raw = params.get(name)
    if raw in (None, ""):
        return None
    try:
        value = cast(raw)
    except ValueError:
        raise ValidationError(f"Invalid numeric filter: {name}")
    if not math.isfinite(value):
        raise ValidationError(f"Invalid numeric filter: {name}")
    return value


def _check_range(filters: Dict[str, Any], low: str, high: str) -> None:
    if filters[low] is not None and filters[high] is not None and filters[low] > filters[high]:
        raise ValidationError(f"{low} must not be greater than {high}")


def _handle_list_feedback(event: Dict[str, Any]) -> Dict[str, Any]:
    params = _query_params(event)
    filters = {
        "documentType": params.get("documentType"),
        "status": params.get("status"),
        "minConfidence": _number_param(params, "minConfidence"),
        "maxConfidence": _number_param(params, "maxConfidence"),
        "startDate": _number_param(params, "startDate", int),
        "endDate": _number_param(params, "endDate", int),
    }
    limit = _number_param(params, "limit", int)
    _check_range(filters, "minConfidence", "maxConfidence")
    _check_range(filters, "startDate", "endDate")
    if limit is not None and limit < 1:
        raise ValidationError("Invalid numeric filter: limit")
    return _response(200, _get_store().list_feedback(filters, limit))


def _handle_create_feedback(event: Dict[str, Any]) -> Dict[str, Any]:
    body = _parse_body(event)
    if not isinstance(body, dict):
        return _error(400, "Invalid JSON body")
    record = _get_store().create_feedback(body)
    return _response(200, {
        "success": True,
        "message": "Classification feedback submitted successfully",
        "feedbackId": record["id"],
        "feedback": record,
    })


def _handle_update_feedback(event: Dict[str, Any]) -> Dict[str, Any]:
    body = _parse_body(event)
    if not isinstance(body, dict):
        return _error(400, "Invalid JSON body")
    feedback_id = body.pop("id", None)
    if not feedback_id:
        return _error(400, "Feedback ID is required")
    modified_by = body.pop("updatedBy", None) or "admin"
    return _response(200, _get_store().update_feedback(feedback_id, body, modified_by))


def _handle_list_audit(event: Dict[str, Any]) -> Dict[str, Any]:
    params = _query_params(event)
    limit = _number_param(params, "limit", int) or DEFAULT_AUDIT_LIMIT
    return _response(
        200,
        _get_store().list_audit(params.get("feedbackId"), params.get("documentId"), limit),
    )


def _handle_by_doctype(event: Dict[str, Any]) -> Dict[str, Any]:
    if not APP_REGION or not FEEDBACK_TABLE:
        return _error(
            500,
            "Missing required environment variables: APP_REGION or DYNAMODB_FEEDBACK_TABLE",
        )
    doc_type = _query_params(event).get("docTypeId")
    return _response(200, _get_store().feedback_by_doctype(doc_type))


def _handle_stats(_event: Dict[str, Any]) -> Dict[str, Any]:
    return _response(200, _get_store().feedback_stats())


def _handle_get_training_config(_event: Dict[str, Any]) -> Dict[str, Any]:
    return _response(200, _get_store().get_training_config())


def _handle_toggle_training(event: Dict[str, Any]) -> Dict[str, Any]:
    body = _parse_body(event)
    if not isinstance(body, dict):
        return _error(400, "Invalid JSON body")
    enabled = body.get("enabled")
    if not isinstance(enabled, bool):
        return _error(400, "Enabled status must be a boolean")
    threshold = body.get("feedbackThreshold")
    if threshold is not None and (
        isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1
    ):
        return _error(400, "feedbackThreshold must be a positive integer")
    config = _get_store().set_auto_training(enabled, threshold)
    return _response(200, {
        "success": True,
        "autoTrainingEnabled": enabled,
        "feedbackThreshold": config.get("feedbackThreshold", DEFAULT_FEEDBACK_THRESHOLD),
    })


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

_ROUTES: List[Tuple[str, "re.Pattern[str]", str, Any]] = [
    ("GET", re.compile(r"/feedback/audit$"), "fetch audit logs", _handle_list_audit),
    ("POST", re.compile(r"/feedback/update$"), "update feedback record", _handle_update_feedback),
    ("GET", re.compile(r"/feedback$"), "fetch feedback records", _handle_list_feedback),
    ("POST", re.compile(r"/feedback$"), "submit classification feedback", _handle_create_feedback),
    ("GET", re.compile(r"/classification-feedback/by-doctype$"), "retrieve classification feedback", _handle_by_doctype),
    ("GET", re.compile(r"/classification-feedback/stats$"), "generate feedback statistics", _handle_stats),
    ("POST", re.compile(r"/classification-feedback$"), "submit classification feedback", _handle_create_feedback),
    ("GET", re.compile(r"/auto-retrain-toggle$"), "get auto-retraining config", _handle_get_training_config),
    ("POST", re.compile(r"/auto-retrain-toggle$"), "toggle auto-retraining", _handle_toggle_training),
]


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _preflight()

    claims, auth_err = _authenticate(event, error_fn=_error)
    if auth_err:
        return auth_err

    path_known = False
    for route_method, pattern, noun, handler in _ROUTES:
        if not pattern.search(path):
            continue
        path_known = True
        if route_method != method:
            continue
        logger.info("[INFO] route method=%s path=%s", method, path)
        try:
            return handler(event)
        except ValidationError as exc:
            return _error(400, str(exc))
        except NotFoundError as exc:
            return _error(404, str(exc))
        except (BotoCoreError, ClientError) as exc:
            logger.error("[ERROR] failed to %s: %s", noun, exc)
            return _error(500, f"Failed to {noun}")

    if path_known:
        return _error(405, f"Method {method} not allowed.")
    return _error(404, f"Unsupported route: {method} {path}")
