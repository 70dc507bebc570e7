"""catalog_store.py — DynamoDB adapter for prompt categories, prompts, retention
policies and storage solutions.

Storage layout (all keyed by `id`):
    prompt-categories   — `{id, name, description, model, temperature, responseFormat}`
    prompts             — prompt records, `category` back-reference (GSI category-index)
    retention-policies  — `{id, name, description, stages: [{id, storageSolutionId, duration}],
                           totalDuration, duration}`; `duration` mirrors `totalDuration`
    storage-solutions   — `{id, name, description, accessLevel, costPerGbPerMonth}`

Retention stages reference storage solutions; deleting a solution that a
stage still uses is refused under the solution's advisory lock.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from docproc_shared.errors import ConflictError, NotFoundError
from docproc_shared.locks import EntityLock
from docproc_shared.serialization import _new_id, _now_ms
from docproc_shared.store import DynamoStore

from config import DEFAULT_PROMPT_CATEGORY, TableNames

logger = logging.getLogger(__name__)

__all__ = ["CatalogStore", "total_duration"]


def total_duration(stages: List[Dict[str, Any]]) -> int:
    return sum(int(stage.get("duration") or 0) for stage in stages)


class CatalogStore(DynamoStore):
    def __init__(self, ddb, tables: TableNames, locks: Optional[EntityLock] = None):
        super().__init__(ddb)
        self.tables = tables
        self.locks = locks or EntityLock(ddb, "")

    # ------------------------------------------------------------------
    # Prompt categories
    # ------------------------------------------------------------------

    def get_all_prompt_categories(self) -> List[Dict[str, Any]]:
        items, _ = self._scan(self.tables.prompt_categories)
        return items

    def get_prompt_category(self, category_id: str) -> Optional[Dict[str, Any]]:
        return self._get(self.tables.prompt_categories, category_id)

    def require_prompt_category(self, category_id: str) -> Dict[str, Any]:
        category = self.get_prompt_category(category_id)
        if category is None:
            raise NotFoundError("Prompt use case not found", "promptCategory", category_id)
        return category

    def create_prompt_category(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = _now_ms()
        category = {**DEFAULT_PROMPT_CATEGORY, **data, "id": _new_id(), "createdAt": now, "updatedAt": now}
        # Prompts live in their own table.
        category.pop("prompts", None)
        self._put(self.tables.prompt_categories, category)
        logger.info("prompt category created: %s (%s)", category["id"], category.get("name"))
        return {**category, "prompts": []}

    def update_prompt_category(self, category_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        updated = self._update(
            self.tables.prompt_categories,
            category_id,
            updates,
            skip=("id", "createdAt", "prompts"),
            timestamp=_now_ms(),
        )
        return updated if updated is not None else self.require_prompt_category(category_id)

    def delete_prompt_category(self, category_id: str) -> int:
        """Delete the category and every prompt filed under it. Returns the prompt count."""
        self.require_prompt_category(category_id)
        with self.locks.hold("promptCategory", category_id):
            removed = self.delete_prompts_by_category(category_id)
            self._delete(self.tables.prompt_categories, category_id)
        logger.info("prompt category deleted: %s (%d prompts)", category_id, removed)
        return removed

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def get_prompts_by_category(self, category_id: str) -> List[Dict[str, Any]]:
        return self._query_index(self.tables.prompts, "category-index", "category", category_id)

    def require_prompt(self, category_id: str, prompt_id: str) -> Dict[str, Any]:
        """The prompt, provided it exists; ConflictError when filed under another category."""
        prompt = self._get(self.tables.prompts, prompt_id)
        if prompt is None:
            raise NotFoundError("Prompt not found", "prompt", prompt_id)
        if prompt.get("category") != category_id:
            raise ConflictError("Prompt does not belong to the specified use case")
        return prompt

    def create_prompt(self, category_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.require_prompt_category(category_id)
        now = _now_ms()
        prompt = {
            "description": "",
            **data,
            "id": _new_id(),
            "isActive": bool(data.get("isActive", True)),
            "category": category_id,
            "createdAt": now,
            "updatedAt": now,
        }
        self._put(self.tables.prompts, prompt)
        return prompt

    def replace_prompts(self, category_id: str, prompts: List[Dict[str, Any]]) -> int:
        """Rewrite a batch of prompts (e.g. after reordering). All must carry `category_id`."""
        self.require_prompt_category(category_id)
        if any(p.get("category") != category_id or not p.get("id") for p in prompts):
            raise ConflictError("All prompts must belong to the specified prompt use case")
        now = _now_ms()
        for prompt in prompts:
            self._put(self.tables.prompts, {**prompt, "updatedAt": now})
        return len(prompts)

    def update_prompt(self, category_id: str, prompt_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        current = self.require_prompt(category_id, prompt_id)
        updated = self._update(
            self.tables.prompts,
            prompt_id,
            updates,
            skip=("id", "category", "createdAt"),
            timestamp=_now_ms(),
        )
        return updated if updated is not None else current

    def delete_prompt(self, category_id: str, prompt_id: str) -> None:
        self.require_prompt(category_id, prompt_id)
        self._delete(self.tables.prompts, prompt_id)

    def delete_prompts_by_category(self, category_id: str) -> int:
        prompts = self.get_prompts_by_category(category_id)
        for prompt in prompts:
            self._delete(self.tables.prompts, prompt["id"])
        return len(prompts)

    # ------------------------------------------------------------------
    # Storage solutions
    # ------------------------------------------------------------------

    def get_all_storage_solutions(self) -> List[Dict[str, Any]]:
        items, _ = self._scan(self.tables.storage_solutions)
        return items

    def get_storage_solution(self, solution_id: str) -> Optional[Dict[str, Any]]:
        return self._get(self.tables.storage_solutions, solution_id)

    def require_storage_solution(self, solution_id: str) -> Dict[str, Any]:
        solution = self.get_storage_solution(solution_id)
        if solution is None:
            raise NotFoundError("Storage solution not found", "storageSolution", solution_id)
        return solution

    def create_storage_solution(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = _now_ms()
        solution = {
            "costPerGbPerMonth": 0,
            **data,
            "id": _new_id(),
            "createdAt": now,
            "updatedAt": now,
        }
        self._put(self.tables.storage_solutions, solution)
        return solution

    def update_storage_solution(self, solution_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        updated = self._update(
            self.tables.storage_solutions,
            solution_id,
            updates,
            skip=("id", "createdAt"),
            timestamp=_now_ms(),
        )
        return updated if updated is not None else self.require_storage_solution(solution_id)

    def policies_using_storage_solution(self, solution_id: str) -> List[Dict[str, Any]]:
        # Stages are a list of maps; match in memory.
        return [
            policy for policy in self.get_all_retention_policies()
            if any(
                isinstance(stage, dict) and stage.get("storageSolutionId") == solution_id
                for stage in policy.get("stages") or []
            )
        ]

    def delete_storage_solution(self, solution_id: str) -> None:
        self.require_storage_solution(solution_id)
        with self.locks.hold("storageSolution", solution_id):
            users = self.policies_using_storage_solution(solution_id)
            if users:
                raise ConflictError(
                    "Cannot delete storage solution that is in use by retention policies",
                    dependents=[{"id": p["id"], "name": p.get("name", "")} for p in users],
                )
            self._delete(self.tables.storage_solutions, solution_id)
        logger.info("storage solution deleted: %s", solution_id)

    # ------------------------------------------------------------------
    # Retention policies
    # ------------------------------------------------------------------

    def get_all_retention_policies(self) -> List[Dict[str, Any]]:
        items, _ = self._scan(self.tables.retention_policies)
        return items

    def get_retention_policy(self, policy_id: str) -> Optional[Dict[str, Any]]:
        return self._get(self.tables.retention_policies, policy_id)

    def require_retention_policy(self, policy_id: str) -> Dict[str, Any]:
        policy = self.get_retention_policy(policy_id)
        if policy is None:
            raise NotFoundError(f"Retention policy with ID {policy_id} not found", "retentionPolicy", policy_id)
        return policy

    def missing_storage_solutions(self, stages: List[Dict[str, Any]]) -> List[str]:
        wanted = {stage.get("storageSolutionId") for stage in stages}
        return sorted(sid or "" for sid in wanted if not sid or self.get_storage_solution(sid) is None)

    def _with_stage_ids(self, stages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [{**stage, "id": stage.get("id") or _new_id()} for stage in stages]

    def create_retention_policy(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = _now_ms()
        stages = self._with_stage_ids(data.get("stages") or [])
        total = total_duration(stages)
        policy = {
            "description": "",
            **data,
            "id": _new_id(),
            "stages": stages,
            "totalDuration": total,
            "duration": total,
            "createdAt": now,
            "updatedAt": now,
        }
        self._put(self.tables.retention_policies, policy)
        logger.info("retention policy created: %s (%d days)", policy["id"], total)
        return policy

    def update_retention_policy(self, policy_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        fields = {k: v for k, v in updates.items() if k not in ("totalDuration", "duration")}
        if "stages" in fields:
            fields["stages"] = self._with_stage_ids(fields["stages"] or [])
            fields["totalDuration"] = fields["duration"] = total_duration(fields["stages"])
        updated = self._update(
            self.tables.retention_policies,
            policy_id,
            fields,
            skip=("id", "createdAt"),
            timestamp=_now_ms(),
        )
        return updated if updated is not None else self.require_retention_policy(policy_id)

    def delete_retention_policy(self, policy_id: str) -> None:
        self.require_retention_policy(policy_id)
        self._delete(self.tables.retention_policies, policy_id)
