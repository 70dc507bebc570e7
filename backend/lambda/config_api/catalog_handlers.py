"""catalog_handlers.py — Route handlers for prompt categories, prompts, retention
policies and storage solutions."""
from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional

from docproc_shared.http_utils import _error, _parse_body, _response

from catalog_store import CatalogStore
from config import PROMPT_ROLES, RESPONSE_FORMAT_TYPES, STORAGE_ACCESS_LEVELS

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _body_dict(event: Dict[str, Any]):
    body = _parse_body(event)
    if not isinstance(body, dict):
        return None, _error(400, "Invalid JSON body")
    return body, None


# ---------------------------------------------------------------------------
# Prompt categories
# ---------------------------------------------------------------------------


def _category_problem(body: Dict[str, Any]) -> Optional[str]:
    if "temperature" in body and not (_is_number(body["temperature"]) and 0 <= body["temperature"] <= 2):
        return "temperature must be a number between 0 and 2"
    if "responseFormat" in body:
        fmt = body["responseFormat"]
        if not isinstance(fmt, dict) or fmt.get("type") not in RESPONSE_FORMAT_TYPES:
            return "responseFormat.type must be one of: " + ", ".join(RESPONSE_FORMAT_TYPES)
    return None


def _handle_list_prompt_categories(store: CatalogStore) -> Dict[str, Any]:
    return _response(200, store.get_all_prompt_categories())


def _handle_create_prompt_category(event: Dict[str, Any], store: CatalogStore) -> Dict[str, Any]:
    body, err = _body_dict(event)
    if err:
        return err
    if not body.get("name"):
        return _error(400, "Missing required field: name")
    problem = _category_problem(body)
    if problem:
        return _error(400, problem)
    return _response(201, store.create_prompt_category(body))


def _handle_get_prompt_category(store: CatalogStore, category_id: str) -> Dict[str, Any]:
    category = store.require_prompt_category(category_id)
    category["prompts"] = store.get_prompts_by_category(category_id)
    return _response(200, category)


def _handle_update_prompt_category(
    event: Dict[str, Any], store: CatalogStore, category_id: str
) -> Dict[str, Any]:
    body, err = _body_dict(event)
    if err:
        return err
    # Blank name, model or responseFormat keep the stored value.
    updates = {
        k: v for k, v in body.items()
        if not (k in ("name", "model", "responseFormat") and not v)
    }
    problem = _category_problem(updates)
    if problem:
        return _error(400, problem)
    store.require_prompt_category(category_id)
    return _response(200, store.update_prompt_category(category_id, updates))


def _handle_delete_prompt_category(store: CatalogStore, category_id: str) -> Dict[str, Any]:
    removed = store.delete_prompt_category(category_id)
    return _response(200, {"success": True, "deletedPrompts": removed})


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def _prompt_problem(body: Dict[str, Any], partial: bool) -> Optional[str]:
    if not partial and (not body.get("name") or not body.get("role") or not body.get("content")):
        return "Missing required fields: name, role, content"
    if body.get("role") and body["role"] not in PROMPT_ROLES:
        return "Invalid prompt role. Must be one of: " + ", ".join(PROMPT_ROLES)
    return None


def _handle_list_prompts(store: CatalogStore, category_id: str) -> Dict[str, Any]:
    store.require_prompt_category(category_id)
    return _response(200, store.get_prompts_by_category(category_id))


def _handle_create_prompt(event: Dict[str, Any], store: CatalogStore, category_id: str) -> Dict[str, Any]:
    body, err = _body_dict(event)
    if err:
        return err
    problem = _prompt_problem(body, partial=False)
    if problem:
        return _error(400, problem)
    return _response(201, store.create_prompt(category_id, body))


def _handle_replace_prompts(event: Dict[str, Any], store: CatalogStore, category_id: str) -> Dict[str, Any]:
    prompts = _parse_body(event)
    if not isinstance(prompts, list) or not all(isinstance(p, dict) for p in prompts):
        return _error(400, "Expected an array of prompts")
    count = store.replace_prompts(category_id, prompts)
    return _response(200, {"success": True, "count": count})


def _handle_delete_prompts(store: CatalogStore, category_id: str) -> Dict[str, Any]:
    store.require_prompt_category(category_id)
    return _response(200, {"success": True, "count": store.delete_prompts_by_category(category_id)})


def _handle_get_prompt(store: CatalogStore, category_id: str, prompt_id: str) -> Dict[str, Any]:
    return _response(200, store.require_prompt(category_id, prompt_id))


def _handle_update_prompt(
    event: Dict[str, Any], store: CatalogStore, category_id: str, prompt_id: str
) -> Dict[str, Any]:
    body, err = _body_dict(event)
    if err:
        return err
    # Blank name, role or content keep the stored value.
    updates = {
        k: v for k, v in body.items()
        if not (k in ("name", "role", "content") and not v)
    }
    problem = _prompt_problem(updates, partial=True)
    if problem:
        return _error(400, problem)
    if "isActive" in updates:
        updates["isActive"] = bool(updates["isActive"])
    return _response(200, store.update_prompt(category_id, prompt_id, updates))


def _handle_delete_prompt(store: CatalogStore, category_id: str, prompt_id: str) -> Dict[str, Any]:
    store.delete_prompt(category_id, prompt_id)
    return _response(200, {"success": True})


# ---------------------------------------------------------------------------
# Storage solutions
# ---------------------------------------------------------------------------


def _storage_problem(body: Dict[str, Any], partial: bool) -> Optional[str]:
    if not partial and (not body.get("name") or not body.get("description") or not body.get("accessLevel")):
        return "Missing required fields: name, description, accessLevel"
    if "accessLevel" in body and body["accessLevel"] not in STORAGE_ACCESS_LEVELS:
        return "Invalid accessLevel. Must be one of: " + ", ".join(STORAGE_ACCESS_LEVELS)
    if "costPerGbPerMonth" in body and not (_is_number(body["costPerGbPerMonth"]) and body["costPerGbPerMonth"] >= 0):
        return "costPerGbPerMonth must be a non-negative number"
    return None


def _handle_list_storage_solutions(store: CatalogStore) -> Dict[str, Any]:
    return _response(200, store.get_all_storage_solutions())


def _handle_create_storage_solution(event: Dict[str, Any], store: CatalogStore) -> Dict[str, Any]:
    body, err = _body_dict(event)
    if err:
        return err
    problem = _storage_problem(body, partial=False)
    if problem:
        return _error(400, problem)
    return _response(201, store.create_storage_solution(body))


def _handle_get_storage_solution(store: CatalogStore, solution_id: str) -> Dict[str, Any]:
    return _response(200, store.require_storage_solution(solution_id))


def _handle_update_storage_solution(
    event: Dict[str, Any], store: CatalogStore, solution_id: str
) -> Dict[str, Any]:
    body, err = _body_dict(event)
    if err:
        return err
    problem = _storage_problem(body, partial=True)
    if problem:
        return _error(400, problem)
    store.require_storage_solution(solution_id)
    return _response(200, store.update_storage_solution(solution_id, body))


def _handle_delete_storage_solution(store: CatalogStore, solution_id: str) -> Dict[str, Any]:
    store.delete_storage_solution(solution_id)
    return _response(200, {"success": True})


# ---------------------------------------------------------------------------
# Retention policies
# ---------------------------------------------------------------------------


def _stages_problem(store: CatalogStore, stages: Any) -> Optional[str]:
    if not isinstance(stages, list) or not stages:
        return "stages must be a non-empty list"
    for stage in stages:
        if not isinstance(stage, dict) or not _is_positive_int(stage.get("duration")):
            return "Each stage needs a positive integer duration (days)"
    missing: List[str] = store.missing_storage_solutions(stages)
    if missing:
        return "Unknown storage solution: " + ", ".join(m or "(none)" for m in missing)
    return None


def _handle_list_retention_policies(store: CatalogStore) -> Dict[str, Any]:
    return _response(200, store.get_all_retention_policies())


def _handle_create_retention_policy(event: Dict[str, Any], store: CatalogStore) -> Dict[str, Any]:
    body, err = _body_dict(event)
    if err:
        return err
    if not body.get("name"):
        return _error(400, "Missing required field: name")
    problem = _stages_problem(store, body.get("stages"))
    if problem:
        return _error(400, problem)
    return _response(201, store.create_retention_policy(body))


def _handle_get_retention_policy(store: CatalogStore, policy_id: str) -> Dict[str, Any]:
    return _response(200, store.require_retention_policy(policy_id))


def _handle_update_retention_policy(
    event: Dict[str, Any], store: CatalogStore, policy_id: str
) -> Dict[str, Any]:
    body, err = _body_dict(event)
    if err:
        return err
    if "name" in body and not body["name"]:
        return _error(400, "name cannot be empty")
    if "stages" in body:
        problem = _stages_problem(store, body["stages"])
        if problem:
            return _error(400, problem)
    store.require_retention_policy(policy_id)
    return _response(200, store.update_retention_policy(policy_id, body))


def _handle_delete_retention_policy(store: CatalogStore, policy_id: str) -> Dict[str, Any]:
    store.delete_retention_policy(policy_id)
    return _response(200, {"success": True, "id": policy_id})
