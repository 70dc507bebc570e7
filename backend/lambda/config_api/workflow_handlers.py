"""workflow_handlers.py — Route handlers for workflows and workflow tasks."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from docproc_shared.errors import ConflictError
from docproc_shared.http_utils import _error, _parse_body, _query_params, _response

from config import WORKFLOW_TYPES
from workflow_store import WorkflowStore

logger = logging.getLogger(__name__)


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _validate_workflow(body: Dict[str, Any]) -> Optional[str]:
    if not body.get("name") or not body.get("description") or not body.get("type"):
        return "Missing required fields: name, description, type"
    if body["type"] not in WORKFLOW_TYPES:
        return "Invalid workflow type. Must be one of: " + ", ".join(WORKFLOW_TYPES)
    if body["type"] == "Exception" and not body.get("linkedWorkflowId"):
        return "Exception workflows must have a linkedWorkflowId"
    if body["type"] == "API" and (
        not body.get("inputParameters") or not body.get("outputParameters")
    ):
        return "API workflows must define inputParameters and outputParameters"
    return None


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


def _handle_list_workflows(event: Dict[str, Any], store: WorkflowStore) -> Dict[str, Any]:
    workflow_type = _query_params(event).get("type")
    if workflow_type:
        return _response(200, store.get_workflows_by_type(workflow_type))
    return _response(200, store.get_all_workflows())


def _handle_create_workflow(event: Dict[str, Any], store: WorkflowStore) -> Dict[str, Any]:
    body = _parse_body(event)
    if not isinstance(body, dict):
        return _error(400, "Invalid JSON body")
    problem = _validate_workflow(body)
    if problem:
        return _error(400, problem)
    if not isinstance(body.get("tasks"), list):
        body["tasks"] = []
    body["isActive"] = bool(body.get("isActive", True))
    return _response(201, store.create_workflow(body))


def _handle_get_workflow(store: WorkflowStore, workflow_id: str) -> Dict[str, Any]:
    workflow = store.get_workflow(workflow_id)
    if workflow is None:
        return _error(404, "Workflow not found")
    return _response(200, workflow)


def _handle_update_workflow(
    event: Dict[str, Any], store: WorkflowStore, workflow_id: str
) -> Dict[str, Any]:
    workflow = store.get_workflow(workflow_id)
    if workflow is None:
        return _error(404, "Workflow not found")
    updates = _parse_body(event)
    if not isinstance(updates, dict):
        return _error(400, "Invalid JSON body")
    if updates.get("type") and updates["type"] != workflow.get("type"):
        return _error(400, "Workflow type cannot be changed")
    # Validate the record as it will look after the merge.
    merged = {**workflow, **updates}
    if workflow.get("type") == "Exception" and not merged.get("linkedWorkflowId"):
        return _error(400, "Exception workflows must have a linkedWorkflowId")
    if workflow.get("type") == "API" and (
        not merged.get("inputParameters") or not merged.get("outputParameters")
    ):
        return _error(400, "API workflows must define inputParameters and outputParameters")
    if "isActive" in updates:
        updates["isActive"] = bool(updates["isActive"])
    return _response(200, store.update_workflow(workflow_id, updates))


def _handle_delete_workflow(store: WorkflowStore, workflow_id: str) -> Dict[str, Any]:
    if store.get_workflow(workflow_id) is None:
        return _error(404, "Workflow not found")
    try:
        store.delete_workflow(workflow_id)
    except ConflictError as exc:
        return _error(400, str(exc), linkedWorkflows=exc.dependents)
    return _response(200, {"success": True})


# ---------------------------------------------------------------------------
# Workflow tasks
# ---------------------------------------------------------------------------


def _handle_list_tasks(event: Dict[str, Any], store: WorkflowStore) -> Dict[str, Any]:
    step = _query_params(event).get("stepId")
    if step:
        try:
            step_id = int(step)
        except ValueError:
            return _error(400, "stepId must be a positive integer")
        if step_id < 1:
            return _error(400, "stepId must be a positive integer")
        return _response(200, store.get_tasks_by_step(step_id))
    return _response(200, store.get_all_tasks())


def _handle_create_task(event: Dict[str, Any], store: WorkflowStore) -> Dict[str, Any]:
    body = _parse_body(event)
    if not isinstance(body, dict):
        return _error(400, "Invalid JSON body")
    if not body.get("name") or not body.get("description") or body.get("stepId") is None:
        return _error(400, "Missing required fields: name, description, stepId")
    if not _is_positive_int(body["stepId"]):
        return _error(400, "stepId must be a positive integer")
    body["defaultEnabled"] = bool(body.get("defaultEnabled", True))
    body["isActive"] = bool(body.get("isActive", True))
    return _response(201, store.create_task(body))


def _handle_seed_tasks(store: WorkflowStore) -> Dict[str, Any]:
    written = store.seed_default_tasks()
    return _response(200, {"success": True, "seeded": written})


def _handle_get_task(store: WorkflowStore, task_id: str) -> Dict[str, Any]:
    task = store.get_task(task_id)
    if task is None:
        return _error(404, "Task not found")
    return _response(200, task)


def _handle_update_task(event: Dict[str, Any], store: WorkflowStore, task_id: str) -> Dict[str, Any]:
    updates = _parse_body(event)
    if not isinstance(updates, dict):
        return _error(400, "Invalid JSON body")
    if "stepId" in updates and not _is_positive_int(updates["stepId"]):
        return _error(400, "stepId must be a positive integer")
    for flag in ("defaultEnabled", "isActive"):
        if flag in updates:
            updates[flag] = bool(updates[flag])
    if store.get_task(task_id) is None:
        return _error(404, "Task not found")
    return _response(200, store.update_task(task_id, updates))


def _handle_delete_task(store: WorkflowStore, task_id: str) -> Dict[str, Any]:
    if store.get_task(task_id) is None:
        return _error(404, "Task not found")
    try:
        store.delete_task(task_id)
    except ConflictError as exc:
        return _error(400, str(exc), workflows=exc.dependents)
    return _response(200, {"success": True})
