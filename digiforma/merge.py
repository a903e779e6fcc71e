"""Lock-aware merge engine — reconcile Digiforma shadow records with the CRM.

Rules, per linked institution or contact:
  locked                          -> external_data/last_sync_at only
  unlocked, initial mode          -> field backfill (institutions: when the
                                     company has a real street address;
                                     contacts: only when digiforma-sourced)
  unlocked, normal mode           -> untouched
  absent                          -> created with data_source="digiforma"

Every write goes through the repositories with WriteOrigin.SYNC, so the sync
never locks a record itself.
"""
import logging
from typing import Any, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from db.models import (
    Contact,
    DataSource,
    DigiformaCompany,
    DigiformaContact,
    Institution,
    MatchType,
    SyncMode,
    WriteOrigin,
)
from db.repositories import contacts as contacts_repo
from db.repositories import digiforma_companies as companies_repo
from db.repositories import institutions as institutions_repo
from db.repositories import mappings as mappings_repo
from digiforma.matching import DigiformaMatcher
from schemas.digiforma import (
    PLACEHOLDER,
    CompanyMetadata,
    ContactPayload,
    TraineePayload,
    is_placeholder,
)

logger = logging.getLogger(__name__)

SOURCE = DataSource.DIGIFORMA
INSTITUTION_TAGS = ["digiforma", "formation"]
CREATED_CRITERIA = "created"
ADDRESS_FIELDS = ("street", "city", "state", "zipCode", "country")

# merge_company outcomes
LINKED = "linked"
PENDING_REVIEW = "pending_review"
CREATED = "created"

# reconcile_contact outcomes
CONTACT_CREATED = "created"
CONTACT_UPDATED = "updated"
CONTACT_EXTERNAL_ONLY = "external_only"
CONTACT_UNCHANGED = "unchanged"
CONTACT_SKIPPED = "skipped"


def _real(value: Optional[str]) -> Optional[str]:
    if value is None or is_placeholder(value):
        return None
    return value.strip()


def company_external_data(company: DigiformaCompany) -> dict[str, Any]:
    """Snapshot of the Digiforma company stored under external_data["digiforma"]."""
    metadata = company.metadata_ or {}
    return {
        "id": company.digiforma_id,
        "name": company.name,
        "email": company.email,
        "phone": company.phone,
        "siret": company.siret,
        "website": company.website,
        "accountingNumber": metadata.get("accountingNumber"),
        "ape": metadata.get("ape"),
        "code": metadata.get("code"),
        "address": dict(company.address or {}),
    }


class DigiformaMerger:
    def __init__(self, session: AsyncSession, mode: str = SyncMode.NORMAL):
        if mode not in SyncMode.ALL:
            raise ValueError(f"Unknown sync mode: {mode!r}")
        self.session = session
        self.mode = mode
        self.matcher = DigiformaMatcher(session)

    # -- companies -----------------------------------------------------------

    async def merge_company(self, company: DigiformaCompany) -> str:
        """Link one unlinked shadow company to an institution, creating it if needed.

        Returns LINKED, PENDING_REVIEW (fuzzy match awaiting confirmation) or
        CREATED.
        """
        institution = await self._trusted_institution(company)
        if institution is not None:
            await self._link(company, institution)
            return LINKED

        # An institution this company created earlier, whose mapping was removed.
        institution = await institutions_repo.get_by_digiforma_id(
            self.session, company.digiforma_id
        )
        if institution is not None:
            await mappings_repo.record_match(
                self.session, company.id, institution.id, MatchType.AUTO, 100, CREATED_CRITERIA
            )
            await self._link(company, institution)
            return LINKED

        match = await self.matcher.find_best_match(company)
        if match is not None and match.match_type == MatchType.AUTO:
            institution = await institutions_repo.get_by_id(self.session, match.institution_id)
            await mappings_repo.record_match(
                self.session,
                company.id,
                institution.id,
                MatchType.AUTO,
                match.score,
                match.match_criteria,
            )
            await self._link(company, institution)
            return LINKED

        if match is not None:
            await mappings_repo.record_match(
                self.session,
                company.id,
                match.institution_id,
                MatchType.FUZZY,
                match.score,
                match.match_criteria,
            )
            logger.info(
                "Company %s left unlinked pending review of fuzzy match %s (score=%d)",
                company.digiforma_id,
                match.institution_id,
                match.score,
            )
            return PENDING_REVIEW

        institution = await self._create_institution(company)
        await mappings_repo.record_match(
            self.session, company.id, institution.id, MatchType.AUTO, 100, CREATED_CRITERIA
        )
        await companies_repo.link_to_institution(self.session, company, institution.id)
        await self._create_primary_contact(company, institution)
        return CREATED

    async def _trusted_institution(self, company: DigiformaCompany) -> Optional[Institution]:
        mapping = await mappings_repo.get_by_company_id(self.session, company.id)
        if mapping is not None and mapping.is_trusted:
            return await institutions_repo.get_by_id(self.session, mapping.institution_id)
        return None

    async def _link(self, company: DigiformaCompany, institution: Institution) -> None:
        await companies_repo.link_to_institution(self.session, company, institution.id)
        await self.apply_to_institution(institution, company)
        logger.info(
            "Linked Digiforma company %s to institution %s", company.digiforma_id, institution.id
        )

    async def apply_to_institution(self, institution: Institution, company: DigiformaCompany) -> bool:
        """Bring Digiforma data into an existing institution. Returns True if anything was written."""
        external = company_external_data(company)
        if institution.is_locked:
            await institutions_repo.record_external_data(self.session, institution, SOURCE, external)
            return True

        if self.mode != SyncMode.INITIAL:
            return False

        incoming = company.address or {}
        if _real(incoming.get("street")) is None:
            return False

        current = institution.address or {}
        address = {
            field: _real(incoming.get(field)) or current.get(field)
            for field in ADDRESS_FIELDS
        }
        await institutions_repo.update(
            self.session, institution, {"address": address}, WriteOrigin.SYNC
        )
        await institutions_repo.record_external_data(self.session, institution, SOURCE, external)
        return True

    async def _create_institution(self, company: DigiformaCompany) -> Institution:
        incoming = company.address or {}
        metadata = CompanyMetadata.model_validate(company.metadata_ or {})
        data = {
            "name": _real(company.name) or PLACEHOLDER,
            "type": "clinic",
            "address": {
                "street": _real(incoming.get("street")) or PLACEHOLDER,
                "city": _real(incoming.get("city")) or PLACEHOLDER,
                "state": _real(incoming.get("state")) or PLACEHOLDER,
                "zipCode": _real(incoming.get("zipCode")) or PLACEHOLDER,
                "country": _real(incoming.get("country")) or "FR",
            },
            "accounting_number": _real(metadata.accounting_number),
            "siret": _real(company.siret),
            "digiforma_id": company.digiforma_id,
            "tags": list(INSTITUTION_TAGS),
        }
        institution = await institutions_repo.create(
            self.session, data, WriteOrigin.SYNC, data_source=SOURCE
        )
        await institutions_repo.record_external_data(
            self.session, institution, SOURCE, company_external_data(company)
        )
        logger.info(
            "Created institution %s from Digiforma company %s", institution.id, company.digiforma_id
        )
        return institution

    async def _create_primary_contact(
        self, company: DigiformaCompany, institution: Institution
    ) -> Optional[Contact]:
        metadata = CompanyMetadata.model_validate(company.metadata_ or {})
        for raw in metadata.contacts:
            if raw.normalized_email:
                contact, _outcome = await self.reconcile_contact(
                    institution, company, raw, make_primary=True
                )
                return contact

        email = _real(company.email)
        if not email:
            return None
        return await contacts_repo.create(
            self.session,
            institution.id,
            {
                "first_name": "",
                "last_name": _real(company.name) or PLACEHOLDER,
                "email": email.lower(),
                "phone": _real(company.phone),
                "title": None,
                "is_primary": True,
            },
            WriteOrigin.SYNC,
            data_source=SOURCE,
        )

    # -- contacts ------------------------------------------------------------

    async def reconcile_contact(
        self,
        institution: Institution,
        company: DigiformaCompany,
        raw: ContactPayload,
        make_primary: bool = False,
    ) -> Tuple[Optional[Contact], str]:
        """Reconcile one raw Digiforma contact with the institution's contacts.

        Matching is by case-insensitive email within the institution. The
        shadow DigiformaContact is refreshed and linked to the CRM contact.
        """
        email = raw.normalized_email
        if email is None:
            return None, CONTACT_SKIPPED

        external = raw.model_dump(exclude_none=True)
        contact = await contacts_repo.find_in_institution_by_email(
            self.session, institution.id, email
        )

        if contact is None:
            is_primary = make_primary and not await contacts_repo.has_primary(
                self.session, institution.id
            )
            contact = await contacts_repo.create(
                self.session,
                institution.id,
                {
                    "first_name": raw.firstname or "",
                    "last_name": raw.lastname or "",
                    "email": email,
                    "phone": raw.phone,
                    "title": raw.role,
                    "is_primary": is_primary,
                },
                WriteOrigin.SYNC,
                data_source=SOURCE,
            )
            await contacts_repo.record_external_data(self.session, contact, SOURCE, external)
            outcome = CONTACT_CREATED
        elif contact.is_locked:
            await contacts_repo.record_external_data(self.session, contact, SOURCE, external)
            outcome = CONTACT_EXTERNAL_ONLY
        elif self.mode == SyncMode.INITIAL and contact.data_source == SOURCE:
            changes = {
                "first_name": raw.firstname or contact.first_name,
                "last_name": raw.lastname or contact.last_name,
                "phone": raw.phone or contact.phone,
                "title": raw.role or contact.title,
            }
            await contacts_repo.update(self.session, contact, changes, WriteOrigin.SYNC)
            await contacts_repo.record_external_data(self.session, contact, SOURCE, external)
            outcome = CONTACT_UPDATED
        else:
            outcome = CONTACT_UNCHANGED

        if raw.id:
            await companies_repo.upsert_contact(
                self.session,
                raw.id,
                {
                    "digiforma_company_id": company.id,
                    "contact_id": contact.id,
                    "first_name": raw.firstname,
                    "last_name": raw.lastname,
                    "email": email,
                    "phone": raw.phone,
                    "role": raw.role,
                    "metadata_": external,
                },
            )
        return contact, outcome

    async def reconcile_trainee(self, trainee: TraineePayload) -> Tuple[DigiformaContact, bool]:
        """Refresh the shadow record of a trainee.

        The trainee is linked to its shadow company and, when that company is
        linked, to the CRM contact with the same email. No CRM record is
        written. Returns (shadow contact, created).
        """
        company = None
        if trainee.company and trainee.company.id:
            company = await companies_repo.get_by_digiforma_id(self.session, trainee.company.id)

        email = trainee.email.strip().lower() if trainee.email and trainee.email.strip() else None
        contact = None
        if company is not None and company.institution_id is not None and email:
            contact = await contacts_repo.find_in_institution_by_email(
                self.session, company.institution_id, email
            )

        return await companies_repo.upsert_contact(
            self.session,
            trainee.id,
            {
                "digiforma_company_id": company.id if company is not None else None,
                "contact_id": contact.id if contact is not None else None,
                "first_name": trainee.firstname,
                "last_name": trainee.lastname,
                "email": email,
                "phone": trainee.phone,
                "role": None,
                "metadata_": {"trainee": True, **trainee.model_dump(exclude_none=True)},
            },
        )
