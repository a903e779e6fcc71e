"""Lock and external-data bookkeeping shared by Institution and Contact writes.

Both entities carry the same multi-source columns (data_source, is_locked,
locked_at, locked_reason, external_data, last_sync_at) so the rules live here
once.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from db.models import Contact, Institution, WriteOrigin

logger = logging.getLogger(__name__)

TrackedRecord = Union[Institution, Contact]

LOCK_REASON_MANUAL_CREATION = "manual_creation"
LOCK_REASON_MANUAL_EDIT = "manual_edit"


def check_origin(origin: str) -> None:
    if origin not in (WriteOrigin.SYNC, WriteOrigin.USER):
        raise ValueError(f"Unknown write origin: {origin!r}")


def lock_fields(reason: str, now: Optional[datetime] = None) -> dict:
    return {
        "is_locked": True,
        "locked_at": now or datetime.now(timezone.utc),
        "locked_reason": reason,
    }


def apply_user_lock(record: TrackedRecord, origin: str, reason: str) -> None:
    """Lock an unlocked record when a user (not the sync) touches it."""
    if origin != WriteOrigin.USER or record.is_locked:
        return
    for key, value in lock_fields(reason).items():
        setattr(record, key, value)
    logger.info("Locked %s %s (%s)", type(record).__name__, record.id, reason)


def set_source_data(
    record: TrackedRecord,
    source: str,
    data: dict[str, Any],
    synced_at: Optional[datetime] = None,
) -> None:
    """Store external attributes under external_data[source] and stamp last_sync_at[source].

    JSON columns are reassigned rather than mutated in place so the ORM sees
    the change.
    """
    stamp = (synced_at or datetime.now(timezone.utc)).isoformat()
    record.external_data = {**(record.external_data or {}), source: data}
    record.last_sync_at = {**(record.last_sync_at or {}), source: stamp}
