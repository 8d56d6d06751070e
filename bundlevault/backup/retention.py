"""
Retention policy enforcement for backups.

Backup dates come from the M-D-YYYY token in each file name, not from file
timestamps, so the same rules apply to the local backup directory and to a
remote SFTP listing.
"""

import logging
import re
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Tuple

from .errors import RetentionDeleteError
from .types import RetentionPolicy, RetentionSummary

logger = logging.getLogger(__name__)


def _date_pattern(name: str):
    return re.compile(rf"^{re.escape(name)}-(\d{{1,2}})-(\d{{1,2}})-(\d{{4}})(?=[-_.]|$)")


def extract_backup_date(file_name: str, name: str) -> Optional[date]:
    """
    Return the date embedded in a backup file name.

    Args:
        file_name: File name to inspect
        name: Backup name the file must start with

    Returns:
        The embedded date, or None if the name has no valid date token
        right after the backup name
    """
    match = _date_pattern(name).match(file_name)
    if not match:
        return None

    month, day, year = (int(group) for group in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def extract_sequence(file_name: str, name: str) -> int:
    """Return a bundle's same-day sequence number, or 0 for other files."""
    match = re.match(
        rf"^{re.escape(name)}-\d{{1,2}}-\d{{1,2}}-\d{{4}}-(\d+)-bundle\.",
        file_name
    )
    return int(match.group(1)) if match else 0


def elapsed_days(backup_date: date, today: date) -> int:
    return (today - backup_date).days


def select_for_deletion(
    file_names: Iterable[str],
    name: str,
    policy: RetentionPolicy,
    today: date
) -> Tuple[List[str], List[str], List[str]]:
    """
    Decide which backups a policy deletes.

    A file is eligible when more whole days than the policy threshold have
    passed since its embedded date. If the policy has a keep_at_least floor,
    the newest files (by date, then sequence) are never deleted.

    Returns:
        Tuple of (to_delete, kept, skipped) file name lists; skipped holds
        names without the backup prefix or a valid date
    """
    dated = []
    skipped = []

    for file_name in file_names:
        backup_date = extract_backup_date(file_name, name)
        if backup_date is None:
            skipped.append(file_name)
            continue
        dated.append((backup_date, extract_sequence(file_name, name), file_name))

    # Newest first
    dated.sort(reverse=True)

    protected = set()
    if policy.keep_at_least:
        protected = {file_name for _, _, file_name in dated[:policy.keep_at_least]}

    threshold = policy.threshold_days
    to_delete = []
    kept = []

    for backup_date, _, file_name in dated:
        if elapsed_days(backup_date, today) > threshold and file_name not in protected:
            to_delete.append(file_name)
        else:
            kept.append(file_name)

    return to_delete, kept, skipped


class RetentionManager:
    """
    Applies one retention policy for one backup name to a storage location.

    The storage only needs list_files() and delete(file_name); both
    LocalStorage and SFTPStorage qualify.
    """

    def __init__(self, name: str, policy: RetentionPolicy, today: Optional[date] = None):
        """
        Initialize retention manager.

        Args:
            name: Backup name whose files are considered
            policy: Age limit and optional keep floor
            today: Reference date (defaults to the local date at prune time)
        """
        self.name = name
        self.policy = policy
        self.today = today
        self.logs = []

    def prune(self, storage) -> RetentionSummary:
        """
        Delete expired backups from a storage location.

        A failure to delete one file is logged and does not stop the rest.

        Returns:
            RetentionSummary for this location

        Raises:
            StorageError: If the location cannot be listed
        """
        today = self.today or date.today()
        summary = RetentionSummary(location=storage.location)

        self._log(
            f"Enforcing retention {self.policy} "
            f"(keep at least {self.policy.keep_at_least or 0}) on {storage.location}"
        )

        file_names = storage.list_files()
        to_delete, kept, skipped = select_for_deletion(file_names, self.name, self.policy, today)
        summary.kept.extend(kept)
        summary.skipped.extend(skipped)

        for file_name in to_delete:
            try:
                storage.delete(file_name)
                summary.deleted.append(file_name)
                self._log(f"Deleted {file_name}")
            except RetentionDeleteError as e:
                error_msg = f"Failed to delete {file_name}: {e}"
                self._log(error_msg, level=logging.WARNING)
                summary.errors.append(error_msg)

        self._log(
            f"Retention complete on {storage.location}. "
            f"Deleted: {len(summary.deleted)}, Kept: {len(summary.kept)}, "
            f"Errors: {len(summary.errors)}"
        )
        return summary

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
