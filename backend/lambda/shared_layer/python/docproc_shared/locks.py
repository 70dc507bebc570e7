"""docproc_shared.locks — Advisory per-entity locks on a DynamoDB table.

Guards check-then-act sequences (scan for dependents, then delete) so two
requests cannot interleave on the same entity id. A lock is a row
`{lock_id, owner, lock_expires_epoch}`; acquisition is a conditional
update that succeeds only when the row is absent or expired, so a crashed
holder never blocks the entity for longer than the TTL.

Creating a *new* reference to the entity (e.g. a workflow that starts using
a task) does not take the lock; that window is an accepted race.
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from typing import Iterator, Optional

from botocore.exceptions import ClientError

from .errors import LockBusyError
from .serialization import _serialize, _unix_now

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 30


class EntityLock:
    """Acquire/release advisory locks keyed by `<kind>#<id>`.

    With an empty table name every operation is a no-op, which leaves the
    guarded sequence best-effort.
    """

    def __init__(self, ddb, table: str, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS):
        self._ddb = ddb
        self.table = table
        self.ttl_seconds = ttl_seconds
        self.owner = uuid.uuid4().hex

    @property
    def enabled(self) -> bool:
        return bool(self.table)

    def acquire(self, lock_id: str) -> bool:
        if not self.enabled:
            return True
        now_epoch = _unix_now()
        try:
            self._ddb.update_item(
                TableName=self.table,
                Key={"lock_id": _serialize(lock_id)},
                UpdateExpression="SET lock_expires_epoch = :lock, #owner = :owner",
                ConditionExpression="attribute_not_exists(lock_expires_epoch) OR lock_expires_epoch <= :now",
                ExpressionAttributeNames={"#owner": "owner"},
                ExpressionAttributeValues={
                    ":lock": _serialize(now_epoch + self.ttl_seconds),
                    ":owner": _serialize(self.owner),
                    ":now": _serialize(now_epoch),
                },
            )
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                return False
            raise

    def release(self, lock_id: str) -> None:
        if not self.enabled:
            return
        try:
            self._ddb.delete_item(
                TableName=self.table,
                Key={"lock_id": _serialize(lock_id)},
                ConditionExpression="#owner = :owner",
                ExpressionAttributeNames={"#owner": "owner"},
                ExpressionAttributeValues={":owner": _serialize(self.owner)},
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                # Expired and taken over by another request; nothing to release.
                logger.warning("lock %s no longer owned at release", lock_id)
                return
            raise

    @contextlib.contextmanager
    def hold(self, kind: str, entity_id: str) -> Iterator[Optional[str]]:
        lock_id = f"{kind}#{entity_id}"
        if not self.acquire(lock_id):
            raise LockBusyError(lock_id)
        try:
            yield lock_id if self.enabled else None
        finally:
            self.release(lock_id)
