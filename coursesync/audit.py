"""
Sync audit trail.

Exactly one record is appended per sync run, success or failure.
The log is append-only: there is no update or delete.
"""

from __future__ import annotations

import logging
from typing import Optional

from coursesync.auth import AuthService
from coursesync.errors import ValidationError
from coursesync.model import SyncAuditRecord
from coursesync.storage import SyncEventRepository, UserRepository

log = logging.getLogger(__name__)


class SyncAuditLog:
    def __init__(
        self,
        events: SyncEventRepository,
        users: UserRepository,
        auth: AuthService,
        local_sync: bool = False,
    ) -> None:
        self.events = events
        self.users = users
        self.auth = auth
        self.local_sync = local_sync

    def acting_user_id(self) -> Optional[int]:
        """
        User recorded on audit rows.

        Local environments attribute runs to the current user; everywhere
        else runs belong to the sync service account.
        """
        if self.local_sync:
            uid = self.auth.current_user_id()
            if not uid:
                raise ValidationError("Invalid UID")
            user = self.users.find_by_student_id(uid)
        else:
            user = self.users.find_sync_service_account()

        if user is None:
            log.warning("No acting user found for sync audit record")
            return None
        return user.id

    def append(self, record: SyncAuditRecord, require_user: bool = True) -> SyncAuditRecord:
        """
        Store one record. With require_user=False an unresolvable acting
        user leaves user_id empty instead of raising.
        """
        if (record.fail_reason is None) != record.status:
            raise ValueError(
                f"Inconsistent audit record: status={record.status} fail_reason={record.fail_reason}"
            )
        if record.user_id is None:
            try:
                record.user_id = self.acting_user_id()
            except ValidationError as e:
                if require_user:
                    raise
                log.warning("Recording sync run without a user: %s", e)

        record.id = self.events.insert(record)
        log.debug(
            "[SYNC AUDIT] %s status=%s reason=%s",
            record.sync_event.value,
            record.status,
            record.fail_reason.value if record.fail_reason else None,
        )
        return record
