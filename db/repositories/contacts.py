"""Contact repository — email lookups and origin-aware writes."""
import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Contact, DataSource, WriteOrigin
from db.repositories.source_tracking import (
    LOCK_REASON_MANUAL_CREATION,
    LOCK_REASON_MANUAL_EDIT,
    apply_user_lock,
    check_origin,
    lock_fields,
    set_source_data,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("first_name", "last_name", "email", "phone", "title", "is_primary")


async def get_by_id(session: AsyncSession, contact_id: UUID) -> Optional[Contact]:
    return await session.get(Contact, contact_id)


async def find_by_email(session: AsyncSession, email: str) -> Optional[Contact]:
    """Oldest contact with this email (case-insensitive), in any institution."""
    result = await session.execute(
        select(Contact)
        .where(func.lower(Contact.email) == email.strip().lower())
        .order_by(Contact.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_in_institution_by_email(
    session: AsyncSession, institution_id: UUID, email: str
) -> Optional[Contact]:
    result = await session.execute(
        select(Contact)
        .where(
            Contact.institution_id == institution_id,
            func.lower(Contact.email) == email.strip().lower(),
        )
        .order_by(Contact.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def has_primary(session: AsyncSession, institution_id: UUID) -> bool:
    result = await session.execute(
        select(func.count())
        .select_from(Contact)
        .where(Contact.institution_id == institution_id, Contact.is_primary.is_(True))
    )
    return result.scalar_one() > 0


async def list_by_institution(session: AsyncSession, institution_id: UUID) -> list[Contact]:
    result = await session.execute(
        select(Contact)
        .where(Contact.institution_id == institution_id)
        .order_by(Contact.is_primary.desc(), Contact.last_name)
    )
    return list(result.scalars().all())


async def create(
    session: AsyncSession,
    institution_id: UUID,
    data: dict[str, Any],
    origin: str,
    data_source: str = DataSource.CRM,
) -> Contact:
    """Insert a contact under an institution. USER-origin creates are locked."""
    check_origin(origin)
    unknown = set(data) - set(EDITABLE_FIELDS) - {"external_data", "last_sync_at"}
    if unknown:
        raise ValueError(f"Unknown contact fields: {sorted(unknown)}")

    values: dict[str, Any] = {
        "first_name": "",
        "last_name": "",
        "is_primary": False,
        "external_data": {},
        "last_sync_at": {},
        "is_locked": False,
        "locked_at": None,
        "locked_reason": None,
    }
    values.update(data)
    values["institution_id"] = institution_id
    values["data_source"] = data_source
    if origin == WriteOrigin.USER:
        values.update(lock_fields(LOCK_REASON_MANUAL_CREATION))

    contact = Contact(**values)
    session.add(contact)
    await session.flush()
    logger.info(
        "Created contact %s <%s> for institution %s (source=%s, origin=%s)",
        contact.id,
        contact.email,
        institution_id,
        data_source,
        origin,
    )
    return contact


async def update(
    session: AsyncSession,
    contact: Contact,
    changes: dict[str, Any],
    origin: str,
) -> Contact:
    check_origin(origin)
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown contact fields: {sorted(unknown)}")

    for key, value in changes.items():
        setattr(contact, key, value)
    apply_user_lock(contact, origin, LOCK_REASON_MANUAL_EDIT)
    await session.flush()
    return contact


async def record_external_data(
    session: AsyncSession,
    contact: Contact,
    source: str,
    data: dict[str, Any],
) -> Contact:
    set_source_data(contact, source, data)
    await session.flush()
    return contact
