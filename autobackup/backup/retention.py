"""
Retention policy enforcement for stored backups.

A policy has two knobs, both disabled at 0:
- max_age_days: delete backups strictly older than this many days
- max_count: keep only this many of the most recent backups

The max_count most recent backups form a protect set that is never deleted,
not even when they are older than max_age_days, so a policy with a count
always leaves the newest backups in place.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from autobackup.errors import StorageError
from .storage import BackupObject, sort_newest_first


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    max_age_days: int = 0
    max_count: int = 0

    @property
    def is_enabled(self) -> bool:
        return self.max_age_days > 0 or self.max_count > 0


@dataclass
class RetentionResult:
    deleted_count: int = 0
    deleted_keys: List[str] = field(default_factory=list)
    errors: List[StorageError] = field(default_factory=list)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def determine_backups_to_delete(
    backups: List[BackupObject],
    policy: RetentionPolicy,
    now: Optional[datetime] = None
) -> List[BackupObject]:
    """
    Decide which backups a policy removes.

    Args:
        backups: Inventory of stored backups, any order
        policy: Retention policy
        now: Reference time (default: current UTC time)

    Returns:
        Backups to delete, newest first
    """
    if not policy.is_enabled:
        return []

    now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    max_age = timedelta(days=policy.max_age_days)

    ordered = sort_newest_first(backups)

    protected = set()
    if policy.max_count > 0:
        protected = {id(backup) for backup in ordered[:policy.max_count]}

    to_delete = []
    for backup in ordered:
        if id(backup) in protected:
            continue

        too_old = policy.max_age_days > 0 and now - _as_utc(backup.last_modified) > max_age
        over_count = policy.max_count > 0

        if too_old or over_count:
            to_delete.append(backup)

    return to_delete


class RetentionManager:
    """
    Applies a retention policy against a storage backend.

    Each deletion is independent: a failed delete is recorded in the result
    and the remaining backups are still processed.
    """

    def __init__(self, storage):
        """
        Args:
            storage: Storage handler with list_objects() and delete()
        """
        self.storage = storage
        self.logs = []

    def enforce(
        self,
        policy: RetentionPolicy,
        prefix: str = '',
        now: Optional[datetime] = None
    ) -> RetentionResult:
        """
        List backups under prefix and delete what the policy selects.

        Raises:
            StorageError: If listing fails
        """
        result = RetentionResult()

        if not policy.is_enabled:
            self._log("Retention: not configured, skipping")
            return result

        self._log(
            f"Enforcing retention policy for '{prefix}' "
            f"(max age: {policy.max_age_days or 'off'} days, max count: {policy.max_count or 'off'})"
        )

        backups = self.storage.list_objects(prefix)
        to_delete = determine_backups_to_delete(backups, policy, now)
        self._log(f"Found {len(backups)} backups, {len(to_delete)} selected for deletion")

        return self.apply(to_delete, result)

    def apply(self, to_delete: List[BackupObject], result: Optional[RetentionResult] = None) -> RetentionResult:
        """Delete the given backups, collecting failures."""
        if result is None:
            result = RetentionResult()

        for backup in to_delete:
            try:
                self.storage.delete(backup.key)
            except StorageError as e:
                result.errors.append(e)
                self._log(f"Failed to delete backup {backup.key}: {e}", logging.WARNING)
            else:
                result.deleted_count += 1
                result.deleted_keys.append(backup.key)
                self._log(f"Deleted old backup: {backup.key}")

        return result

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def apply_retention(
    storage,
    policy: RetentionPolicy,
    prefix: str = '',
    now: Optional[datetime] = None
) -> RetentionResult:
    """
    Enforce a retention policy for one backup prefix.

    Raises:
        StorageError: If listing fails. Delete failures are returned in the result.
    """
    return RetentionManager(storage).enforce(policy, prefix, now)
