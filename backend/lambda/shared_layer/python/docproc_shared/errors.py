"""docproc_shared.errors — Domain exceptions raised by the store layer.

Handlers translate these to HTTP statuses; botocore errors are left to
propagate and become generic 500s at the handler boundary.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ValidationError(ValueError):
    """Raised when a payload is missing required fields or has bad values."""


class NotFoundError(LookupError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, message: str, entity: str = "", entity_id: str = ""):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(ValueError):
    """Raised when a delete is refused because dependents still reference the entity."""

    def __init__(self, message: str, dependents: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.dependents = list(dependents or [])


class LockBusyError(RuntimeError):
    """Raised when another request holds the advisory lock for an entity."""

    def __init__(self, lock_id: str):
        super().__init__(f"Entity is locked by another request: {lock_id}")
        self.lock_id = lock_id
