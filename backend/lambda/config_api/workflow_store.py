"""workflow_store.py — DynamoDB adapter for workflows and workflow tasks.

Workflows reference tasks through `tasks: [{taskId, ...}]` and Exception
workflows reference their API workflow through `linkedWorkflowId`. Deletes
refuse to break either reference; the dependency scan and the delete run
under an advisory lock on the entity being deleted.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from docproc_shared.errors import ConflictError, NotFoundError
from docproc_shared.expressions import And, Cond
from docproc_shared.locks import EntityLock
from docproc_shared.serialization import _new_id, _now_ms
from docproc_shared.store import DynamoStore

from config import DEFAULT_WORKFLOW_TASKS, TableNames

logger = logging.getLogger(__name__)

__all__ = ["WorkflowStore"]


def _summary(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{"id": item["id"], "name": item.get("name", "")} for item in items]


class WorkflowStore(DynamoStore):
    def __init__(self, ddb, tables: TableNames, locks: Optional[EntityLock] = None):
        super().__init__(ddb)
        self.tables = tables
        self.locks = locks or EntityLock(ddb, "")

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def get_all_workflows(self) -> List[Dict[str, Any]]:
        items, _ = self._scan(self.tables.workflows)
        return items

    def get_workflows_by_type(self, workflow_type: str) -> List[Dict[str, Any]]:
        return self._query_index(self.tables.workflows, "type-createdAt-index", "type", workflow_type)

    def get_workflow(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        return self._get(self.tables.workflows, workflow_id)

    def create_workflow(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = _now_ms()
        workflow = {**data, "id": _new_id(), "createdAt": now, "updatedAt": now}
        self._put(self.tables.workflows, workflow)
        logger.info("workflow created: %s (%s)", workflow["id"], workflow.get("type"))
        return workflow

    def update_workflow(self, workflow_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Partial update; returns the full record, unmodified when nothing is set."""
        updated = self._update(
            self.tables.workflows,
            workflow_id,
            updates,
            skip=("id", "createdAt"),
            timestamp=_now_ms(),
        )
        if updated is not None:
            return updated
        current = self.get_workflow(workflow_id)
        if current is None:
            raise NotFoundError("Workflow not found", "workflow", workflow_id)
        return current

    def linked_exception_workflows(self, workflow_id: str) -> List[Dict[str, Any]]:
        items, _ = self._scan(
            self.tables.workflows,
            And(Cond("type", "eq", "Exception"), Cond("linkedWorkflowId", "eq", workflow_id)),
        )
        return items

    def delete_workflow(self, workflow_id: str) -> None:
        """Delete unless an Exception workflow still links to it.

        Raises ConflictError (dependents = linked workflows), LockBusyError
        when another request holds the workflow lock.
        """
        with self.locks.hold("workflow", workflow_id):
            linked = self.linked_exception_workflows(workflow_id)
            if linked:
                raise ConflictError(
                    "Cannot delete API workflow that has linked Exception workflows",
                    dependents=_summary(linked),
                )
            self._delete(self.tables.workflows, workflow_id)
        logger.info("workflow deleted: %s", workflow_id)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def get_all_tasks(self) -> List[Dict[str, Any]]:
        items, _ = self._scan(self.tables.workflow_tasks)
        return items

    def get_tasks_by_step(self, step_id: int) -> List[Dict[str, Any]]:
        return self._query_index(self.tables.workflow_tasks, "stepId-index", "stepId", int(step_id))

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        return self._get(self.tables.workflow_tasks, task_id)

    def create_task(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = _now_ms()
        task = {**data, "id": data.get("id") or _new_id(), "createdAt": now, "updatedAt": now}
        self._put(self.tables.workflow_tasks, task)
        return task

    def update_task(self, task_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        updated = self._update(
            self.tables.workflow_tasks,
            task_id,
            updates,
            skip=("id", "createdAt"),
            timestamp=_now_ms(),
        )
        if updated is not None:
            return updated
        current = self.get_task(task_id)
        if current is None:
            raise NotFoundError("Task not found", "task", task_id)
        return current

    def workflows_using_task(self, task_id: str) -> List[Dict[str, Any]]:
        # `tasks` is a list of maps, which a filter expression cannot match
        # on a nested key; check in memory.
        workflows = self.get_all_workflows()
        return [
            wf for wf in workflows
            if any(isinstance(t, dict) and t.get("taskId") == task_id for t in wf.get("tasks") or [])
        ]

    def delete_task(self, task_id: str) -> None:
        with self.locks.hold("task", task_id):
            users = self.workflows_using_task(task_id)
            if users:
                raise ConflictError(
                    "Cannot delete task that is in use by workflows",
                    dependents=_summary(users),
                )
            self._delete(self.tables.workflow_tasks, task_id)
        logger.info("task deleted: %s", task_id)

    def seed_default_tasks(self) -> int:
        """Write the default task catalogue into an empty task table.

        Returns the number of tasks written (0 when the table already has tasks).
        """
        existing, _ = self._scan(self.tables.workflow_tasks, limit=1)
        if existing:
            return 0
        now = _now_ms()
        tasks = [
            {**task, "defaultEnabled": True, "isActive": True, "createdAt": now, "updatedAt": now}
            for task in DEFAULT_WORKFLOW_TASKS
        ]
        failed = self._batch_put(self.tables.workflow_tasks, tasks)
        logger.info("seeded %d default workflow tasks", len(tasks) - failed)
        return len(tasks) - failed
