"""Institution repository — lookups used by matching, origin-aware writes."""
import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DataSource, Institution, WriteOrigin
from db.repositories.source_tracking import (
    LOCK_REASON_MANUAL_CREATION,
    LOCK_REASON_MANUAL_EDIT,
    apply_user_lock,
    check_origin,
    lock_fields,
    set_source_data,
)

logger = logging.getLogger(__name__)

# Columns a caller may set through create()/update(). Lock and source
# columns are managed here, not by callers.
EDITABLE_FIELDS = (
    "name",
    "type",
    "address",
    "accounting_number",
    "siret",
    "digiforma_id",
    "tags",
    "is_active",
)


async def get_by_id(session: AsyncSession, institution_id: UUID) -> Optional[Institution]:
    return await session.get(Institution, institution_id)


async def get_by_accounting_number(
    session: AsyncSession, accounting_number: str
) -> Optional[Institution]:
    result = await session.execute(
        select(Institution).where(Institution.accounting_number == accounting_number)
    )
    return result.scalar_one_or_none()


async def get_by_siret(session: AsyncSession, siret: str) -> Optional[Institution]:
    """Match on the siret column, or on a SIRET previously stored by the sync."""
    result = await session.execute(
        select(Institution)
        .where(
            or_(
                Institution.siret == siret,
                Institution.external_data[("digiforma", "siret")].as_string() == siret,
            )
        )
        .order_by(Institution.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_by_digiforma_id(session: AsyncSession, digiforma_id: str) -> Optional[Institution]:
    result = await session.execute(
        select(Institution).where(Institution.digiforma_id == digiforma_id)
    )
    return result.scalar_one_or_none()


async def list_active(session: AsyncSession) -> list[Institution]:
    """All active institutions, the candidate pool for fuzzy matching."""
    result = await session.execute(
        select(Institution).where(Institution.is_active.is_(True)).order_by(Institution.name)
    )
    return list(result.scalars().all())


async def count(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(Institution))
    return result.scalar_one()


async def create(
    session: AsyncSession,
    data: dict[str, Any],
    origin: str,
    data_source: str = DataSource.CRM,
) -> Institution:
    """Insert an institution.

    data keys: any of EDITABLE_FIELDS, plus optional external_data and
    last_sync_at dicts. A USER-origin create is locked immediately.
    """
    check_origin(origin)
    unknown = set(data) - set(EDITABLE_FIELDS) - {"external_data", "last_sync_at"}
    if unknown:
        raise ValueError(f"Unknown institution fields: {sorted(unknown)}")

    values: dict[str, Any] = {
        "type": "clinic",
        "address": {},
        "tags": [],
        "is_active": True,
        "external_data": {},
        "last_sync_at": {},
        "is_locked": False,
        "locked_at": None,
        "locked_reason": None,
    }
    values.update(data)
    values["data_source"] = data_source
    if origin == WriteOrigin.USER:
        values.update(lock_fields(LOCK_REASON_MANUAL_CREATION))

    institution = Institution(**values)
    session.add(institution)
    await session.flush()
    logger.info(
        "Created institution %s (%s, source=%s, origin=%s)",
        institution.id,
        institution.name,
        data_source,
        origin,
    )
    return institution


async def update(
    session: AsyncSession,
    institution: Institution,
    changes: dict[str, Any],
    origin: str,
) -> Institution:
    """Apply field changes. USER-origin edits lock an unlocked institution;
    SYNC-origin edits never touch the lock."""
    check_origin(origin)
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown institution fields: {sorted(unknown)}")

    for key, value in changes.items():
        setattr(institution, key, value)
    apply_user_lock(institution, origin, LOCK_REASON_MANUAL_EDIT)
    await session.flush()
    return institution


async def record_external_data(
    session: AsyncSession,
    institution: Institution,
    source: str,
    data: dict[str, Any],
) -> Institution:
    """Update only external_data[source] / last_sync_at[source].

    Safe on locked institutions: no CRM-visible field is written.
    """
    set_source_data(institution, source, data)
    await session.flush()
    return institution

