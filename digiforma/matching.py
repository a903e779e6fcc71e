"""Matching engine — find the CRM institution a Digiforma company belongs to.

Signals, in strict priority order:
  1. accounting number (exact)            -> 100, "accountingNumber"
  2. SIRET (exact)                        -> 100, "siret"
  3. email of any CRM contact (exact)     -> 100, "email"
  4. fuzzy name+city / name+zipcode       -> 70..100, "fuzzy_name_city" / "fuzzy_name_zipcode"

A score >= AUTO_MATCH_THRESHOLD is an "auto" match; MIN_SCORE..AUTO is
"fuzzy" and needs a human to confirm it; below MIN_SCORE nothing is returned.
"""
import logging
from typing import Awaitable, Callable, List, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel
from rapidfuzz import fuzz, process
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DigiformaCompany, Institution, MatchType
from db.repositories import contacts as contacts_repo
from db.repositories import institutions as institutions_repo
from digiforma.normalize import normalize_city, normalize_name, normalize_zip
from schemas.digiforma import CompanyMetadata, is_placeholder

logger = logging.getLogger(__name__)

MIN_SCORE = 70
AUTO_MATCH_THRESHOLD = 85

CRITERIA_ACCOUNTING_NUMBER = "accountingNumber"
CRITERIA_SIRET = "siret"
CRITERIA_EMAIL = "email"
CRITERIA_FUZZY_CITY = "fuzzy_name_city"
CRITERIA_FUZZY_ZIPCODE = "fuzzy_name_zipcode"


class MatchResult(BaseModel):
    institution_id: UUID
    institution_name: str
    score: int
    match_criteria: str
    match_type: str


def classify(score: int) -> Optional[str]:
    """auto / fuzzy / None for a 0-100 score."""
    if score >= AUTO_MATCH_THRESHOLD:
        return MatchType.AUTO
    if score >= MIN_SCORE:
        return MatchType.FUZZY
    return None


def _result(institution: Institution, score: int, criteria: str) -> MatchResult:
    return MatchResult(
        institution_id=institution.id,
        institution_name=institution.name,
        score=score,
        match_criteria=criteria,
        match_type=classify(score),
    )


def _clean(value: Optional[str]) -> str:
    if value is None or is_placeholder(value):
        return ""
    return value.strip()


class DigiformaMatcher:
    """Stateless apart from the session it reads through."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # -- exact signals -----------------------------------------------------

    def _exact_lookups(
        self, company: DigiformaCompany
    ) -> List[Tuple[str, Callable[[], Awaitable[Optional[Institution]]]]]:
        metadata = CompanyMetadata.model_validate(company.metadata_ or {})
        lookups = []

        accounting_number = _clean(metadata.accounting_number)
        if accounting_number:
            lookups.append((
                CRITERIA_ACCOUNTING_NUMBER,
                lambda: institutions_repo.get_by_accounting_number(self.session, accounting_number),
            ))

        siret = _clean(company.siret)
        if siret:
            lookups.append((
                CRITERIA_SIRET,
                lambda: institutions_repo.get_by_siret(self.session, siret),
            ))

        emails = [_clean(company.email).lower()]
        emails += [c.normalized_email for c in metadata.contacts]
        emails = [e for i, e in enumerate(emails) if e and e not in emails[:i]]
        if emails:
            lookups.append((CRITERIA_EMAIL, lambda: self._match_by_email(emails)))

        return lookups

    async def _match_by_email(self, emails: List[str]) -> Optional[Institution]:
        for email in emails:
            contact = await contacts_repo.find_by_email(self.session, email)
            if contact is not None:
                return await institutions_repo.get_by_id(self.session, contact.institution_id)
        return None

    # -- fuzzy signal ------------------------------------------------------

    async def _fuzzy_matches(self, company: DigiformaCompany) -> List[MatchResult]:
        name = normalize_name(company.name)
        if not name:
            return []

        institutions = await institutions_repo.list_active(self.session)
        if not institutions:
            return []

        address = company.address or {}
        metadata = company.metadata_ or {}
        city = normalize_city(_clean(address.get("city")))
        zip_code = normalize_zip(_clean(metadata.get("cityCode")) or _clean(address.get("zipCode")))

        by_id = {inst.id: inst for inst in institutions}
        name_city = {}
        name_zip = {}
        for inst in institutions:
            inst_address = inst.address or {}
            inst_name = normalize_name(inst.name)
            inst_city = normalize_city(_clean(inst_address.get("city")))
            inst_zip = normalize_zip(_clean(inst_address.get("zipCode")))
            name_city[inst.id] = f"{inst_name} {inst_city}".strip()
            name_zip[inst.id] = f"{inst_name} {inst_zip}".strip()

        best: dict[UUID, MatchResult] = {}

        def collect(query: str, choices: dict, criteria: str) -> None:
            hits = process.extract(
                query,
                choices,
                scorer=fuzz.token_sort_ratio,
                score_cutoff=MIN_SCORE,
                limit=None,
            )
            for _choice, raw_score, inst_id in hits:
                score = int(round(raw_score))
                if score < MIN_SCORE:
                    continue
                current = best.get(inst_id)
                if current is None or score > current.score:
                    best[inst_id] = _result(by_id[inst_id], score, criteria)

        collect(f"{name} {city}".strip(), name_city, CRITERIA_FUZZY_CITY)
        if zip_code:
            collect(f"{name} {zip_code}", name_zip, CRITERIA_FUZZY_ZIPCODE)

        return sorted(best.values(), key=lambda r: r.score, reverse=True)

    # -- public API ----------------------------------------------------------

    async def find_best_match(self, company: DigiformaCompany) -> Optional[MatchResult]:
        """Single best match, first exact signal wins; None when nothing scores >= MIN_SCORE."""
        for criteria, lookup in self._exact_lookups(company):
            institution = await lookup()
            if institution is not None:
                logger.info(
                    "Company %s matched institution %s by %s",
                    company.digiforma_id,
                    institution.id,
                    criteria,
                )
                return _result(institution, 100, criteria)

        fuzzy = await self._fuzzy_matches(company)
        if fuzzy:
            top = fuzzy[0]
            logger.info(
                "Company %s fuzzy-matched institution %s (%s, score=%d, %s)",
                company.digiforma_id,
                top.institution_id,
                top.match_criteria,
                top.score,
                top.match_type,
            )
            return top

        logger.info("No match for Digiforma company %s (%s)", company.digiforma_id, company.name)
        return None

    async def get_suggested_matches(
        self, company: DigiformaCompany, limit: int = 5
    ) -> List[MatchResult]:
        """Ranked candidates for manual review: every exact hit plus fuzzy ones,
        one entry per institution, best score first."""
        suggestions: List[MatchResult] = []
        seen = set()
        for criteria, lookup in self._exact_lookups(company):
            institution = await lookup()
            if institution is not None and institution.id not in seen:
                seen.add(institution.id)
                suggestions.append(_result(institution, 100, criteria))

        for candidate in await self._fuzzy_matches(company):
            if candidate.institution_id not in seen:
                seen.add(candidate.institution_id)
                suggestions.append(candidate)

        suggestions.sort(key=lambda r: r.score, reverse=True)
        return suggestions[:limit]
