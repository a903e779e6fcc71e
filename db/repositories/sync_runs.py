"""Sync run repository — one DigiformaSync row per pass."""
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DigiformaSync, SyncMode, SyncStatus, SyncType

logger = logging.getLogger(__name__)

COUNTER_FIELDS = tuple(
    f"{entity}_{kind}"
    for entity in ("companies", "contacts", "quotes", "invoices")
    for kind in ("synced", "created", "updated")
)

FINAL_STATUSES = (SyncStatus.SUCCESS, SyncStatus.PARTIAL, SyncStatus.ERROR)


async def get_by_id(session: AsyncSession, sync_id: UUID) -> Optional[DigiformaSync]:
    return await session.get(DigiformaSync, sync_id)


async def get_in_progress(session: AsyncSession) -> Optional[DigiformaSync]:
    result = await session.execute(
        select(DigiformaSync)
        .where(DigiformaSync.status == SyncStatus.IN_PROGRESS)
        .order_by(DigiformaSync.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create(
    session: AsyncSession,
    sync_type: str = SyncType.MANUAL,
    mode: str = SyncMode.NORMAL,
    triggered_by: Optional[str] = None,
) -> DigiformaSync:
    """Insert a pending run with zeroed counters."""
    if sync_type not in SyncType.ALL:
        raise ValueError(f"Unknown sync type: {sync_type!r}")
    if mode not in SyncMode.ALL:
        raise ValueError(f"Unknown sync mode: {mode!r}")

    run = DigiformaSync(
        sync_type=sync_type,
        mode=mode,
        status=SyncStatus.PENDING,
        started_at=datetime.now(timezone.utc),
        completed_at=None,
        errors=[],
        metadata_=None,
        triggered_by=triggered_by,
        **{field: 0 for field in COUNTER_FIELDS},
    )
    session.add(run)
    await session.flush()
    return run


async def set_status(session: AsyncSession, run: DigiformaSync, status: str) -> DigiformaSync:
    if status not in SyncStatus.ALL:
        raise ValueError(f"Unknown sync status: {status!r}")
    run.status = status
    await session.flush()
    return run


async def add_error(
    session: AsyncSession,
    run: DigiformaSync,
    error_type: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
) -> DigiformaSync:
    """Append one {type, message, details} entry to the run's error list."""
    entry = {"type": error_type, "message": message, "details": details or {}}
    run.errors = [*(run.errors or []), entry]
    await session.flush()
    return run


async def update_progress(
    session: AsyncSession, run: DigiformaSync, counters: dict[str, int]
) -> DigiformaSync:
    unknown = set(counters) - set(COUNTER_FIELDS)
    if unknown:
        raise ValueError(f"Unknown sync counters: {sorted(unknown)}")
    for key, value in counters.items():
        setattr(run, key, value)
    await session.flush()
    return run


async def complete(session: AsyncSession, run: DigiformaSync, status: str) -> DigiformaSync:
    if status not in FINAL_STATUSES:
        raise ValueError(f"A run cannot complete with status {status!r}")
    run.status = status
    run.completed_at = datetime.now(timezone.utc)
    await session.flush()
    return run


async def get_last_successful(session: AsyncSession) -> Optional[DigiformaSync]:
    result = await session.execute(
        select(DigiformaSync)
        .where(DigiformaSync.status == SyncStatus.SUCCESS)
        .order_by(DigiformaSync.completed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def count(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(DigiformaSync))
    return result.scalar_one()


async def get_history(
    session: AsyncSession, limit: int = 50, offset: int = 0
) -> Tuple[list[DigiformaSync], int]:
    """Page of runs, newest first, with the total row count."""
    result = await session.execute(
        select(DigiformaSync)
        .order_by(DigiformaSync.started_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), await count(session)
