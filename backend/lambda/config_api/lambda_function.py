"""lambda_function.py — Document-processor configuration API.

Routes (matched on the path tail, so any stage or API prefix works):
    GET|POST          /update-config
    GET               /update-config/debug
    POST              /update-config/reset
    GET|POST          /update-config/document-types
    GET|PUT|DELETE    /update-config/document-types/{docTypeId}
    POST              /update-config/document-types/{docTypeId}/fix-elements
    GET|POST          /update-config/document-types/{docTypeId}/sub-types
    GET|PUT|DELETE    /update-config/document-types/{docTypeId}/sub-types/{subTypeId}
    GET|POST          /update-config/document-types/{docTypeId}[/sub-types/{subTypeId}]/elements
    GET|PUT|DELETE    /update-config/document-types/{docTypeId}[/sub-types/{subTypeId}]/elements/{elementId}
    GET|POST          /update-config/workflows
    GET|PUT|DELETE    /update-config/workflows/{workflowId}
    GET|POST          /update-config/workflow-tasks
    POST              /update-config/workflow-tasks/seed
    GET|PUT|DELETE    /update-config/workflow-tasks/{taskId}
    GET|POST          /update-config/prompt-categories
    GET|PUT|DELETE    /update-config/prompt-categories/{categoryId}
    GET|POST|PUT|DELETE /update-config/prompt-categories/{categoryId}/prompts
    GET|PUT|DELETE    /update-config/prompt-categories/{categoryId}/prompts/{promptId}
    GET|POST          /update-config/retention-policies
    GET|PUT|DELETE    /update-config/retention-policies/{policyId}
    GET|POST          /update-config/storage-solutions
    GET|PUT|DELETE    /update-config/storage-solutions/{solutionId}

Auth: Cognito JWT from the docproc_id_token cookie, or X-Docproc-Internal-Key.
"""
from __future__ import annotations

import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from docproc_shared.auth import _authenticate
from docproc_shared.aws_clients import _get_ddb
from docproc_shared.errors import ConflictError, LockBusyError, NotFoundError
from docproc_shared.http_utils import _error, _path_method, _preflight
from docproc_shared.locks import EntityLock

from config import APP_REGION, LOCK_TTL_SECONDS, TableNames, logger
from catalog_store import CatalogStore
from document_store import ConfigStore
from workflow_store import WorkflowStore
import catalog_handlers as ch
import handlers as h
import workflow_handlers as wh

# ---------------------------------------------------------------------------
# Store lifecycle
# ---------------------------------------------------------------------------

_config_store: Optional[ConfigStore] = None
_workflow_store: Optional[WorkflowStore] = None
_catalog_store: Optional[CatalogStore] = None


def _get_config_store() -> ConfigStore:
    global _config_store
    if _config_store is None:
        ddb = _get_ddb(APP_REGION or None)
        tables = TableNames.from_env()
        _config_store = ConfigStore(ddb, tables, EntityLock(ddb, tables.locks, LOCK_TTL_SECONDS))
    return _config_store


def _get_workflow_store() -> WorkflowStore:
    global _workflow_store
    if _workflow_store is None:
        ddb = _get_ddb(APP_REGION or None)
        tables = TableNames.from_env()
        _workflow_store = WorkflowStore(ddb, tables, EntityLock(ddb, tables.locks, LOCK_TTL_SECONDS))
    return _workflow_store


def _get_catalog_store() -> CatalogStore:
    global _catalog_store
    if _catalog_store is None:
        ddb = _get_ddb(APP_REGION or None)
        tables = TableNames.from_env()
        _catalog_store = CatalogStore(ddb, tables, EntityLock(ddb, tables.locks, LOCK_TTL_SECONDS))
    return _catalog_store


def _reset_stores() -> None:
    global _config_store, _workflow_store, _catalog_store
    for store in (_config_store, _workflow_store, _catalog_store):
        if store is not None:
            store.close()
    _config_store = None
    _workflow_store = None
    _catalog_store = None


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

_SEG = r"([^/]+)"
_DT = r"/update-config/document-types/" + _SEG
_ST = _DT + r"/sub-types/" + _SEG
_PC = r"/update-config/prompt-categories/" + _SEG

Handler = Callable[[Dict[str, Any], Tuple[str, ...]], Dict[str, Any]]


def _cfg(fn):
    return lambda event, ids: fn(_get_config_store(), *ids)


def _cfg_body(fn):
    return lambda event, ids: fn(event, _get_config_store(), *ids)


def _wf(fn):
    return lambda event, ids: fn(_get_workflow_store(), *ids)


def _wf_body(fn):
    return lambda event, ids: fn(event, _get_workflow_store(), *ids)


def _cat(fn):
    return lambda event, ids: fn(_get_catalog_store(), *ids)


def _cat_body(fn):
    return lambda event, ids: fn(event, _get_catalog_store(), *ids)


def _sub_scoped(fn, with_body: bool):
    # Path order is (docTypeId, subTypeId, elementId); handlers take sub_type_id last.
    def call(event, ids):
        doc_type_id, sub_type_id, *rest = ids
        args = (doc_type_id, *rest, sub_type_id)
        if with_body:
            return fn(event, _get_config_store(), *args)
        return fn(_get_config_store(), *args)
    return call


# (method, tail pattern, failure noun, handler). Most specific patterns first.
_ROUTES: List[Tuple[str, "re.Pattern[str]", str, Handler]] = [
    (m, re.compile(p + r"$"), noun, fn)
    for m, p, noun, fn in [
        ("GET", r"/update-config", "fetch config", _cfg(h._handle_get_app_config)),
        ("POST", r"/update-config", "save config", _cfg_body(h._handle_save_app_config)),
        ("GET", r"/update-config/debug", "run diagnostics", _cfg(h._handle_debug)),
        ("POST", r"/update-config/reset", "reset configuration", _cfg(h._handle_reset)),

        ("GET", _ST + r"/elements/" + _SEG, "fetch data element", _sub_scoped(h._handle_get_element, False)),
        ("PUT", _ST + r"/elements/" + _SEG, "update data element", _sub_scoped(h._handle_update_element, True)),
        ("DELETE", _ST + r"/elements/" + _SEG, "delete data element", _sub_scoped(h._handle_delete_element, False)),
        ("GET", _ST + r"/elements", "fetch data elements", _sub_scoped(h._handle_list_elements, False)),
        ("POST", _ST + r"/elements", "create data element", _sub_scoped(h._handle_create_element, True)),
        ("GET", _ST, "fetch sub-type", _cfg(h._handle_get_sub_type)),
        ("PUT", _ST, "update sub-type", _cfg_body(h._handle_update_sub_type)),
        ("DELETE", _ST, "delete sub-type", _cfg(h._handle_delete_sub_type)),
        ("GET", _DT + r"/sub-types", "fetch sub-types", _cfg(h._handle_list_sub_types)),
        ("POST", _DT + r"/sub-types", "create sub-type", _cfg_body(h._handle_create_sub_type)),
        ("GET", _DT + r"/elements/" + _SEG, "fetch data element", _cfg(h._handle_get_element)),
        ("PUT", _DT + r"/elements/" + _SEG, "update data element", _cfg_body(h._handle_update_element)),
        ("DELETE", _DT + r"/elements/" + _SEG, "delete data element", _cfg(h._handle_delete_element)),
        ("GET", _DT + r"/elements", "fetch data elements", _cfg(h._handle_list_elements)),
        ("POST", _DT + r"/elements", "create data element", _cfg_body(h._handle_create_element)),
        ("POST", _DT + r"/fix-elements", "fix document elements", _cfg(h._handle_fix_elements)),
        ("GET", _DT, "fetch document type", _cfg(h._handle_get_document_type)),
        ("PUT", _DT, "update document type", _cfg_body(h._handle_update_document_type)),
        ("DELETE", _DT, "delete document type", _cfg(h._handle_delete_document_type)),
        ("GET", r"/update-config/document-types", "fetch document types", _cfg(h._handle_list_document_types)),
        ("POST", r"/update-config/document-types", "create document type", _cfg_body(h._handle_create_document_type)),

        ("POST", r"/update-config/workflow-tasks/seed", "seed workflow tasks", _wf(wh._handle_seed_tasks)),
        ("GET", r"/update-config/workflow-tasks/" + _SEG, "fetch workflow task", _wf(wh._handle_get_task)),
        ("PUT", r"/update-config/workflow-tasks/" + _SEG, "update workflow task", _wf_body(wh._handle_update_task)),
        ("DELETE", r"/update-config/workflow-tasks/" + _SEG, "delete workflow task", _wf(wh._handle_delete_task)),
        ("GET", r"/update-config/workflow-tasks", "fetch workflow tasks", _wf_body(wh._handle_list_tasks)),
        ("POST", r"/update-config/workflow-tasks", "create workflow task", _wf_body(wh._handle_create_task)),
        ("GET", r"/update-config/workflows/" + _SEG, "fetch workflow", _wf(wh._handle_get_workflow)),
        ("PUT", r"/update-config/workflows/" + _SEG, "update workflow", _wf_body(wh._handle_update_workflow)),
        ("DELETE", r"/update-config/workflows/" + _SEG, "delete workflow", _wf(wh._handle_delete_workflow)),
        ("GET", r"/update-config/workflows", "fetch workflows", _wf_body(wh._handle_list_workflows)),
        ("POST", r"/update-config/workflows", "create workflow", _wf_body(wh._handle_create_workflow)),

        ("GET", _PC + r"/prompts/" + _SEG, "fetch prompt", _cat(ch._handle_get_prompt)),
        ("PUT", _PC + r"/prompts/" + _SEG, "update prompt", _cat_body(ch._handle_update_prompt)),
        ("DELETE", _PC + r"/prompts/" + _SEG, "delete prompt", _cat(ch._handle_delete_prompt)),
        ("GET", _PC + r"/prompts", "fetch prompts", _cat(ch._handle_list_prompts)),
        ("POST", _PC + r"/prompts", "create prompt", _cat_body(ch._handle_create_prompt)),
        ("PUT", _PC + r"/prompts", "update prompts", _cat_body(ch._handle_replace_prompts)),
        ("DELETE", _PC + r"/prompts", "delete prompts", _cat(ch._handle_delete_prompts)),
        ("GET", _PC, "fetch prompt use case", _cat(ch._handle_get_prompt_category)),
        ("PUT", _PC, "update prompt use case", _cat_body(ch._handle_update_prompt_category)),
        ("DELETE", _PC, "delete prompt use case", _cat(ch._handle_delete_prompt_category)),
        ("GET", r"/update-config/prompt-categories", "fetch prompt use cases", _cat(ch._handle_list_prompt_categories)),
        ("POST", r"/update-config/prompt-categories", "create prompt use case", _cat_body(ch._handle_create_prompt_category)),

        ("GET", r"/update-config/retention-policies/" + _SEG, "fetch retention policy", _cat(ch._handle_get_retention_policy)),
        ("PUT", r"/update-config/retention-policies/" + _SEG, "update retention policy", _cat_body(ch._handle_update_retention_policy)),
        ("DELETE", r"/update-config/retention-policies/" + _SEG, "delete retention policy", _cat(ch._handle_delete_retention_policy)),
        ("GET", r"/update-config/retention-policies", "fetch retention policies", _cat(ch._handle_list_retention_policies)),
        ("POST", r"/update-config/retention-policies", "create retention policy", _cat_body(ch._handle_create_retention_policy)),
        ("GET", r"/update-config/storage-solutions/" + _SEG, "fetch storage solution", _cat(ch._handle_get_storage_solution)),
        ("PUT", r"/update-config/storage-solutions/" + _SEG, "update storage solution", _cat_body(ch._handle_update_storage_solution)),
        ("DELETE", r"/update-config/storage-solutions/" + _SEG, "delete storage solution", _cat(ch._handle_delete_storage_solution)),
        ("GET", r"/update-config/storage-solutions", "fetch storage solutions", _cat(ch._handle_list_storage_solutions)),
        ("POST", r"/update-config/storage-solutions", "create storage solution", _cat_body(ch._handle_create_storage_solution)),
    ]
]


def _match_route(method: str, path: str) -> Tuple[Optional[Tuple[str, Handler]], Optional[Tuple[str, ...]], bool]:
    """Return ((noun, handler), ids, path_known) for the first matching route."""
    path_known = False
    for route_method, pattern, noun, fn in _ROUTES:
        m = pattern.search(path)
        if not m:
            continue
        path_known = True
        if route_method == method:
            return (noun, fn), m.groups(), True
    return None, None, path_known


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)

    if method == "OPTIONS":
        return _preflight()

    claims, auth_err = _authenticate(event, error_fn=_error)
    if auth_err:
        return auth_err

    route, ids, path_known = _match_route(method, path)
    if route is None:
        if path_known:
            return _error(405, f"Method {method} not allowed.")
        return _error(404, f"Unsupported route: {method} {path}")

    noun, fn = route
    logger.info("[INFO] route method=%s path=%s", method, path)
    try:
        return fn(event, ids)
    except NotFoundError as exc:
        return _error(404, str(exc))
    except ConflictError as exc:
        return _error(400, str(exc), dependents=exc.dependents)
    except LockBusyError as exc:
        logger.warning("[WARNING] %s: %s", noun, exc)
        return _error(409, "Another request is modifying this entity. Please retry.")
    except (BotoCoreError, ClientError) as exc:
        logger.error("[ERROR] failed to %s (%s %s): %s", noun, method, path, exc)
        return _error(500, f"Failed to {noun}")
