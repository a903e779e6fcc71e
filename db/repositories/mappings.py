"""Mapping registry — Digiforma company ↔ CRM institution links.

At most one mapping exists per shadow company (unique constraint on
digiforma_company_id); every write here updates that row in place rather
than inserting a second one.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DigiformaCompany, DigiformaInstitutionMapping, MatchType

logger = logging.getLogger(__name__)

MANUAL_CRITERIA = "manual"


async def get_by_id(
    session: AsyncSession, mapping_id: UUID
) -> Optional[DigiformaInstitutionMapping]:
    return await session.get(DigiformaInstitutionMapping, mapping_id)


async def get_by_company_id(
    session: AsyncSession, company_id: UUID
) -> Optional[DigiformaInstitutionMapping]:
    result = await session.execute(
        select(DigiformaInstitutionMapping).where(
            DigiformaInstitutionMapping.digiforma_company_id == company_id
        )
    )
    return result.scalar_one_or_none()


async def get_by_institution_id(
    session: AsyncSession, institution_id: UUID
) -> Optional[DigiformaInstitutionMapping]:
    """Most trusted mapping pointing at this institution, if any."""
    result = await session.execute(
        select(DigiformaInstitutionMapping)
        .where(DigiformaInstitutionMapping.institution_id == institution_id)
        .order_by(
            DigiformaInstitutionMapping.match_score.desc(),
            DigiformaInstitutionMapping.created_at,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_fuzzy_matches(session: AsyncSession) -> list[DigiformaInstitutionMapping]:
    """Review queue: fuzzy mappings, best score first."""
    result = await session.execute(
        select(DigiformaInstitutionMapping)
        .where(DigiformaInstitutionMapping.match_type == MatchType.FUZZY)
        .order_by(
            DigiformaInstitutionMapping.match_score.desc(),
            DigiformaInstitutionMapping.created_at,
        )
    )
    return list(result.scalars().all())


async def record_match(
    session: AsyncSession,
    company_id: UUID,
    institution_id: UUID,
    match_type: str,
    score: int,
    criteria: str,
) -> DigiformaInstitutionMapping:
    """Record an auto or fuzzy match found by the merge engine.

    A manual mapping is never overwritten by a computed one. Refreshing a
    fuzzy mapping towards a different institution drops its confirmation.
    """
    if match_type not in (MatchType.AUTO, MatchType.FUZZY):
        raise ValueError(f"record_match only stores computed matches, got {match_type!r}")

    mapping = await get_by_company_id(session, company_id)
    if mapping is None:
        mapping = DigiformaInstitutionMapping(
            digiforma_company_id=company_id,
            institution_id=institution_id,
            match_type=match_type,
            match_score=score,
            match_criteria=criteria,
            confirmed_by=None,
            confirmed_at=None,
            notes=None,
        )
        session.add(mapping)
        await session.flush()
        return mapping

    if mapping.match_type == MatchType.MANUAL:
        logger.info(
            "Keeping manual mapping %s for company %s (computed %s match ignored)",
            mapping.id,
            company_id,
            match_type,
        )
        return mapping

    if mapping.institution_id != institution_id:
        mapping.confirmed_by = None
        mapping.confirmed_at = None
    mapping.institution_id = institution_id
    mapping.match_type = match_type
    mapping.match_score = score
    mapping.match_criteria = criteria
    await session.flush()
    return mapping


async def create_manual_mapping(
    session: AsyncSession,
    company: DigiformaCompany,
    institution_id: UUID,
    confirmed_by: str,
    notes: Optional[str] = None,
) -> DigiformaInstitutionMapping:
    """Create or overwrite the company's mapping as a manual, confirmed link.

    Also links the shadow company to the institution.
    """
    now = datetime.now(timezone.utc)
    mapping = await get_by_company_id(session, company.id)
    if mapping is None:
        mapping = DigiformaInstitutionMapping(
            digiforma_company_id=company.id,
            institution_id=institution_id,
            match_type=MatchType.MANUAL,
            match_score=100,
            match_criteria=MANUAL_CRITERIA,
            confirmed_by=confirmed_by,
            confirmed_at=now,
            notes=notes,
        )
        session.add(mapping)
    else:
        mapping.institution_id = institution_id
        mapping.match_type = MatchType.MANUAL
        mapping.match_score = 100
        mapping.match_criteria = MANUAL_CRITERIA
        mapping.confirmed_by = confirmed_by
        mapping.confirmed_at = now
        mapping.notes = notes

    company.institution_id = institution_id
    await session.flush()
    logger.info(
        "Manual mapping %s: company %s -> institution %s by %s",
        mapping.id,
        company.id,
        institution_id,
        confirmed_by,
    )
    return mapping


async def confirm_mapping(
    session: AsyncSession,
    mapping: DigiformaInstitutionMapping,
    confirmed_by: str,
) -> DigiformaInstitutionMapping:
    """Stamp a mapping as human-confirmed, keeping its type and score.

    Also links the shadow company to the mapped institution.
    """
    mapping.confirmed_by = confirmed_by
    mapping.confirmed_at = datetime.now(timezone.utc)
    company = await session.get(DigiformaCompany, mapping.digiforma_company_id)
    if company is not None:
        company.institution_id = mapping.institution_id
    await session.flush()
    logger.info("Mapping %s confirmed by %s", mapping.id, confirmed_by)
    return mapping


async def delete_mapping(session: AsyncSession, mapping: DigiformaInstitutionMapping) -> None:
    """Delete the mapping and clear the shadow company's institution link."""
    company = await session.get(DigiformaCompany, mapping.digiforma_company_id)
    if company is not None:
        company.institution_id = None
    await session.delete(mapping)
    await session.flush()
    logger.info("Deleted mapping %s", mapping.id)
