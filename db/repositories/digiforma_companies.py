"""Shadow-record repository — local copies of Digiforma companies and contacts.

Rows are keyed by the Digiforma identifier; upserts report whether a row was
created so the sync run can count created vs updated. Shadow rows are never
deleted by the sync.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DigiformaCompany, DigiformaContact
from schemas.digiforma import CompanyPayload

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Companies
# ---------------------------------------------------------------------------


async def get_by_id(session: AsyncSession, company_id: UUID) -> Optional[DigiformaCompany]:
    return await session.get(DigiformaCompany, company_id)


async def get_by_digiforma_id(
    session: AsyncSession, digiforma_id: str
) -> Optional[DigiformaCompany]:
    result = await session.execute(
        select(DigiformaCompany).where(DigiformaCompany.digiforma_id == digiforma_id)
    )
    return result.scalar_one_or_none()


async def get_by_institution(
    session: AsyncSession, institution_id: UUID
) -> Optional[DigiformaCompany]:
    result = await session.execute(
        select(DigiformaCompany)
        .where(DigiformaCompany.institution_id == institution_id)
        .order_by(DigiformaCompany.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


def _company_values(payload: CompanyPayload) -> dict[str, Any]:
    return {
        "name": payload.name or "",
        "email": payload.email or None,
        "phone": payload.phone or None,
        "address": payload.address().to_dict(),
        "siret": payload.siret or None,
        "website": payload.website or None,
        "metadata_": payload.shadow_metadata(),
        "last_sync_at": datetime.now(timezone.utc),
    }


async def upsert_company(
    session: AsyncSession, payload: CompanyPayload
) -> Tuple[DigiformaCompany, bool]:
    """Insert or refresh the shadow copy of one company.

    The institution link is left alone on update. Returns (company, created).
    """
    if not payload.id:
        raise ValueError("Digiforma company payload has no id")

    values = _company_values(payload)
    company = await get_by_digiforma_id(session, payload.id)
    if company is None:
        company = DigiformaCompany(digiforma_id=payload.id, institution_id=None, **values)
        session.add(company)
        await session.flush()
        return company, True

    for key, value in values.items():
        setattr(company, key, value)
    await session.flush()
    return company, False


async def list_unlinked(session: AsyncSession) -> list[DigiformaCompany]:
    result = await session.execute(
        select(DigiformaCompany)
        .where(DigiformaCompany.institution_id.is_(None))
        .order_by(DigiformaCompany.name)
    )
    return list(result.scalars().all())


async def list_linked(session: AsyncSession) -> list[DigiformaCompany]:
    result = await session.execute(
        select(DigiformaCompany)
        .where(DigiformaCompany.institution_id.is_not(None))
        .order_by(DigiformaCompany.name)
    )
    return list(result.scalars().all())


async def link_to_institution(
    session: AsyncSession, company: DigiformaCompany, institution_id: Optional[UUID]
) -> DigiformaCompany:
    """Set (or clear, with None) the company's institution link."""
    company.institution_id = institution_id
    await session.flush()
    return company


async def count_companies(session: AsyncSession) -> Tuple[int, int]:
    """Return (total, linked) shadow company counts."""
    total = await session.execute(select(func.count()).select_from(DigiformaCompany))
    linked = await session.execute(
        select(func.count())
        .select_from(DigiformaCompany)
        .where(DigiformaCompany.institution_id.is_not(None))
    )
    return total.scalar_one(), linked.scalar_one()


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


_CONTACT_FIELDS = (
    "digiforma_company_id",
    "contact_id",
    "first_name",
    "last_name",
    "email",
    "phone",
    "role",
    "metadata_",
)


async def get_contact_by_digiforma_id(
    session: AsyncSession, digiforma_id: str
) -> Optional[DigiformaContact]:
    result = await session.execute(
        select(DigiformaContact).where(DigiformaContact.digiforma_id == digiforma_id)
    )
    return result.scalar_one_or_none()


async def upsert_contact(
    session: AsyncSession,
    digiforma_id: str,
    data: dict[str, Any],
) -> Tuple[DigiformaContact, bool]:
    """Insert or refresh a shadow contact.

    data keys: digiforma_company_id, contact_id, first_name, last_name,
    email, phone, role, metadata_. A None contact_id or digiforma_company_id
    never clears an existing link. Returns (contact, created).
    """
    unknown = set(data) - set(_CONTACT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown shadow contact fields: {sorted(unknown)}")
    values = {key: data.get(key) for key in _CONTACT_FIELDS}
    values["first_name"] = values["first_name"] or ""
    values["last_name"] = values["last_name"] or ""
    values["last_sync_at"] = datetime.now(timezone.utc)

    shadow = await get_contact_by_digiforma_id(session, digiforma_id)
    if shadow is None:
        shadow = DigiformaContact(digiforma_id=digiforma_id, **values)
        session.add(shadow)
        await session.flush()
        return shadow, True

    for key, value in values.items():
        if key in ("contact_id", "digiforma_company_id") and value is None:
            continue
        setattr(shadow, key, value)
    await session.flush()
    return shadow, False
