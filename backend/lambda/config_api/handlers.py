"""handlers.py — Route handlers for /update-config and its document-type tree.

Handlers receive the store explicitly and return API Gateway responses.
Domain exceptions (NotFoundError, ConflictError, LockBusyError) and botocore
errors propagate to lambda_function, which maps them to HTTP statuses.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from docproc_shared.aws_clients import APP_ACCESS_KEY_ID, APP_SECRET_ACCESS_KEY
from docproc_shared.errors import NotFoundError
from docproc_shared.http_utils import _error, _parse_body, _response

from config import APP_REGION, DYNAMODB_LOCAL_ENDPOINT
from document_store import ConfigStore

logger = logging.getLogger(__name__)

# Tables scanned by the debug route.
_DEBUG_CHECK_TABLES = ("config", "document_types", "elements")


def _body_or_error(event: Dict[str, Any]):
    body = _parse_body(event)
    if not isinstance(body, dict):
        return None, _error(400, "Invalid JSON body")
    return body, None


# ---------------------------------------------------------------------------
# AppConfig
# ---------------------------------------------------------------------------


def _handle_get_app_config(store: ConfigStore) -> Dict[str, Any]:
    return _response(200, store.build_or_get_app_config())


def _handle_save_app_config(event: Dict[str, Any], store: ConfigStore) -> Dict[str, Any]:
    body, err = _body_or_error(event)
    if err:
        return err
    config = body.get("config", body)
    if not isinstance(config, dict) or not isinstance(config.get("documentTypes"), list):
        return _error(400, "Config must include a documentTypes list")
    store.update_app_config(config)
    return _response(200, {"success": True})


def _handle_reset(store: ConfigStore) -> Dict[str, Any]:
    config, warnings = store.rebuild_app_config()
    return _response(200, {
        "success": True,
        "message": "Configuration rebuilt from DynamoDB tables",
        "documentTypes": len(config["documentTypes"]),
        "warnings": warnings,
    })


def _handle_debug(store: ConfigStore) -> Dict[str, Any]:
    """Environment report plus a Limit 5 scan of a few tables.

    This is the one route that returns raw error text.
    """
    tables = {
        "config": store.tables.config,
        "document_types": store.tables.document_types,
        "sub_types": store.tables.sub_types,
        "elements": store.tables.elements,
        "workflows": store.tables.workflows,
        "workflow_tasks": store.tables.workflow_tasks,
    }
    if not APP_REGION and not DYNAMODB_LOCAL_ENDPOINT:
        return _error(500, "DynamoDB region is not configured (set APP_REGION or DYNAMODB_REGION)")
    missing = sorted(k for k, v in tables.items() if not v)
    if missing:
        return _error(500, f"DynamoDB table names are not configured: {', '.join(missing)}")

    connection: Dict[str, Any] = {}
    for key in _DEBUG_CHECK_TABLES:
        table = tables[key]
        try:
            items, _ = store._scan(table, limit=5)
            connection[table] = {"ok": True, "count": len(items)}
        except (BotoCoreError, ClientError) as exc:
            connection[table] = {"ok": False, "error": str(exc)}

    return _response(200, {
        "environment": {
            "region": APP_REGION,
            "hasAccessKey": bool(APP_ACCESS_KEY_ID),
            "hasSecretKey": bool(APP_SECRET_ACCESS_KEY),
            "localEndpoint": DYNAMODB_LOCAL_ENDPOINT or None,
            "tables": tables,
        },
        "connectionTest": connection,
    })


# ---------------------------------------------------------------------------
# Document types
# ---------------------------------------------------------------------------


def _handle_list_document_types(store: ConfigStore) -> Dict[str, Any]:
    return _response(200, store.get_all_document_types())


def _handle_create_document_type(event: Dict[str, Any], store: ConfigStore) -> Dict[str, Any]:
    body, err = _body_or_error(event)
    if err:
        return err
    if not body.get("name"):
        return _error(400, "Document type name is required")
    return _response(201, store.create_document_type(body))


def _handle_get_document_type(store: ConfigStore, doc_type_id: str) -> Dict[str, Any]:
    doc_type = store.get_document_type(doc_type_id)
    if doc_type is None:
        return _error(404, "Document type not found")
    doc_type["dataElements"] = store.get_data_elements_by_document_type(doc_type_id)
    doc_type["trainingDatasets"] = store.get_training_datasets_by_document_type(doc_type_id)
    return _response(200, doc_type)


def _handle_update_document_type(
    event: Dict[str, Any], store: ConfigStore, doc_type_id: str
) -> Dict[str, Any]:
    body, err = _body_or_error(event)
    if err:
        return err
    store.require_document_type(doc_type_id)
    store.update_document_type(doc_type_id, body)
    return _response(200, {"success": True})


def _handle_delete_document_type(store: ConfigStore, doc_type_id: str) -> Dict[str, Any]:
    store.delete_document_type(doc_type_id)
    return _response(200, {"success": True})


def _handle_fix_elements(store: ConfigStore, doc_type_id: str) -> Dict[str, Any]:
    doc_type = store.require_document_type(doc_type_id)
    if not store.fix_document_elements(doc_type_id):
        return _error(500, "Failed to fix document elements")
    return _response(200, {
        "success": True,
        "message": f"Successfully fixed document elements for {doc_type.get('name', doc_type_id)}",
    })


# ---------------------------------------------------------------------------
# Sub-types
# ---------------------------------------------------------------------------


def _handle_list_sub_types(store: ConfigStore, doc_type_id: str) -> Dict[str, Any]:
    store.require_document_type(doc_type_id)
    return _response(200, store.get_sub_types_by_document_type(doc_type_id))


def _handle_create_sub_type(
    event: Dict[str, Any], store: ConfigStore, doc_type_id: str
) -> Dict[str, Any]:
    body, err = _body_or_error(event)
    if err:
        return err
    if not body.get("name"):
        return _error(400, "Sub-type name is required")
    return _response(201, store.create_sub_type(doc_type_id, body))


def _handle_get_sub_type(store: ConfigStore, doc_type_id: str, sub_type_id: str) -> Dict[str, Any]:
    store.require_document_type(doc_type_id)
    sub_type = store.require_sub_type(doc_type_id, sub_type_id)
    sub_type["dataElements"] = store.get_data_elements_by_sub_type(sub_type_id)
    return _response(200, sub_type)


def _handle_update_sub_type(
    event: Dict[str, Any], store: ConfigStore, doc_type_id: str, sub_type_id: str
) -> Dict[str, Any]:
    body, err = _body_or_error(event)
    if err:
        return err
    store.require_document_type(doc_type_id)
    store.update_sub_type(doc_type_id, sub_type_id, body)
    return _response(200, {"success": True})


def _handle_delete_sub_type(store: ConfigStore, doc_type_id: str, sub_type_id: str) -> Dict[str, Any]:
    store.require_document_type(doc_type_id)
    store.delete_sub_type(doc_type_id, sub_type_id)
    return _response(200, {"success": True})


# ---------------------------------------------------------------------------
# Data elements (direct and sub-type scoped)
# ---------------------------------------------------------------------------


def _require_scope(store: ConfigStore, doc_type_id: str, sub_type_id: Optional[str]) -> None:
    store.require_document_type(doc_type_id)
    if sub_type_id:
        store.require_sub_type(doc_type_id, sub_type_id)


def _handle_list_elements(
    store: ConfigStore, doc_type_id: str, sub_type_id: Optional[str] = None
) -> Dict[str, Any]:
    _require_scope(store, doc_type_id, sub_type_id)
    if sub_type_id:
        return _response(200, store.get_data_elements_by_sub_type(sub_type_id))
    return _response(200, store.get_data_elements_by_document_type(doc_type_id))


def _handle_create_element(
    event: Dict[str, Any], store: ConfigStore, doc_type_id: str, sub_type_id: Optional[str] = None
) -> Dict[str, Any]:
    body, err = _body_or_error(event)
    if err:
        return err
    if not body.get("name"):
        return _error(400, "Data element name is required")
    element = store.create_data_element(doc_type_id, body, sub_type_id)
    return _response(201, element)


def _find_element(
    store: ConfigStore, doc_type_id: str, element_id: str, sub_type_id: Optional[str]
) -> Dict[str, Any]:
    if sub_type_id:
        candidates = store.get_data_elements_by_sub_type(sub_type_id)
    else:
        candidates = store.get_data_elements_by_document_type(doc_type_id)
    for element in candidates:
        if element.get("id") == element_id:
            return element
    raise NotFoundError("Data element not found", "dataElement", element_id)


def _handle_get_element(
    store: ConfigStore, doc_type_id: str, element_id: str, sub_type_id: Optional[str] = None
) -> Dict[str, Any]:
    _require_scope(store, doc_type_id, sub_type_id)
    return _response(200, _find_element(store, doc_type_id, element_id, sub_type_id))


def _handle_update_element(
    event: Dict[str, Any],
    store: ConfigStore,
    doc_type_id: str,
    element_id: str,
    sub_type_id: Optional[str] = None,
) -> Dict[str, Any]:
    body, err = _body_or_error(event)
    if err:
        return err
    _require_scope(store, doc_type_id, sub_type_id)
    _find_element(store, doc_type_id, element_id, sub_type_id)
    store.update_data_element(doc_type_id, element_id, body, sub_type_id)
    return _response(200, {"success": True})


def _handle_delete_element(
    store: ConfigStore, doc_type_id: str, element_id: str, sub_type_id: Optional[str] = None
) -> Dict[str, Any]:
    _require_scope(store, doc_type_id, sub_type_id)
    _find_element(store, doc_type_id, element_id, sub_type_id)
    store.delete_data_element(doc_type_id, element_id, sub_type_id)
    return _response(200, {"success": True})
