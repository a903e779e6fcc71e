"""Consumer-facing Digiforma sync operations.

Everything here returns plain, JSON-serializable dicts so a controller (or the
crm_sync CLI) can hand them straight back to a caller.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set
from uuid import UUID

from db.connection import get_db
from db.models import (
    DigiformaCompany,
    DigiformaInstitutionMapping,
    DigiformaSync,
    SyncMode,
    SyncType,
)
from db.repositories import billing as billing_repo
from db.repositories import digiforma_companies as companies_repo
from db.repositories import institutions as institutions_repo
from db.repositories import mappings as mappings_repo
from db.repositories import settings as settings_repo
from digiforma.client import DigiformaClient
from digiforma.exceptions import (
    CompanyNotFoundError,
    DigiformaNotConfiguredError,
    InstitutionNotFoundError,
    MappingNotFoundError,
)
from digiforma.matching import DigiformaMatcher
from digiforma.orchestrator import DigiformaSyncOrchestrator, SessionScope

logger = logging.getLogger(__name__)

HISTORY_MAX_LIMIT = 100


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _as_uuid(value, label: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise ValueError(f"Invalid {label}: {value!r}") from exc


def serialize_sync_run(run: Optional[DigiformaSync]) -> Optional[Dict[str, Any]]:
    if run is None:
        return None
    return {
        "id": str(run.id),
        "syncType": run.sync_type,
        "mode": run.mode,
        "status": run.status,
        "startedAt": _iso(run.started_at),
        "completedAt": _iso(run.completed_at),
        "companiesSynced": run.companies_synced,
        "companiesCreated": run.companies_created,
        "companiesUpdated": run.companies_updated,
        "contactsSynced": run.contacts_synced,
        "contactsCreated": run.contacts_created,
        "contactsUpdated": run.contacts_updated,
        "quotesSynced": run.quotes_synced,
        "quotesCreated": run.quotes_created,
        "quotesUpdated": run.quotes_updated,
        "invoicesSynced": run.invoices_synced,
        "invoicesCreated": run.invoices_created,
        "invoicesUpdated": run.invoices_updated,
        "errors": list(run.errors or []),
        "triggeredBy": run.triggered_by,
    }


def serialize_company(company: Optional[DigiformaCompany]) -> Optional[Dict[str, Any]]:
    if company is None:
        return None
    return {
        "id": str(company.id),
        "digiformaId": company.digiforma_id,
        "institutionId": str(company.institution_id) if company.institution_id else None,
        "name": company.name,
        "email": company.email,
        "phone": company.phone,
        "address": company.address,
        "siret": company.siret,
        "website": company.website,
        "metadata": company.metadata_,
        "lastSyncAt": _iso(company.last_sync_at),
    }


def serialize_mapping(mapping: Optional[DigiformaInstitutionMapping]) -> Optional[Dict[str, Any]]:
    if mapping is None:
        return None
    return {
        "id": str(mapping.id),
        "digiformaCompanyId": str(mapping.digiforma_company_id),
        "institutionId": str(mapping.institution_id),
        "matchType": mapping.match_type,
        "matchScore": mapping.match_score,
        "matchCriteria": mapping.match_criteria,
        "confirmedBy": mapping.confirmed_by,
        "confirmedAt": _iso(mapping.confirmed_at),
        "notes": mapping.notes,
        "createdAt": _iso(mapping.created_at),
    }


class DigiformaSyncService:
    """Entry point for controllers and the CLI.

    session_scope defaults to db.get_db; client_factory builds the API client
    from (bearer_token, api_url) and defaults to DigiformaClient.
    """

    def __init__(
        self,
        session_scope: SessionScope = get_db,
        client_factory: Callable[..., Any] = DigiformaClient,
    ):
        self.session_scope = session_scope
        self.client_factory = client_factory
        self._tasks: Set[asyncio.Task] = set()

    # -- settings / client ---------------------------------------------------

    async def _load_client(self, require_enabled: bool = True):
        async with self.session_scope() as session:
            settings = await settings_repo.get_settings(session)
            if not settings.is_configured():
                raise DigiformaNotConfiguredError("Digiforma API token is not configured")
            if require_enabled and not settings.is_enabled:
                raise DigiformaNotConfiguredError("Digiforma integration is disabled")
            token = settings_repo.get_decrypted_token(settings)
            api_url = settings.api_url
        return self.client_factory(token, api_url)

    async def configure(
        self,
        bearer_token: Optional[str] = None,
        is_enabled: Optional[bool] = None,
        api_url: Optional[str] = None,
        auto_sync_enabled: Optional[bool] = None,
        sync_frequency: Optional[str] = None,
    ) -> Dict[str, Any]:
        async with self.session_scope() as session:
            settings = await settings_repo.get_settings(session)
            if bearer_token is not None:
                await settings_repo.set_bearer_token(session, settings, bearer_token)
            await settings_repo.update_config(
                session,
                settings,
                is_enabled=is_enabled,
                api_url=api_url,
                auto_sync_enabled=auto_sync_enabled,
                sync_frequency=sync_frequency,
            )
            return {
                "isConfigured": settings.is_configured(),
                "isEnabled": settings.is_enabled,
                "apiUrl": settings.api_url,
                "autoSyncEnabled": settings.auto_sync_enabled,
                "syncFrequency": settings.sync_frequency,
                "lastTestDate": _iso(settings.last_test_date),
                "lastTestSuccess": settings.last_test_success,
                "lastSyncDate": _iso(settings.last_sync_date),
            }

    async def test_connection(self) -> Dict[str, Any]:
        """Ping Digiforma with the stored token and record the outcome."""
        client = await self._load_client(require_enabled=False)
        result = await asyncio.to_thread(client.test_connection)
        async with self.session_scope() as session:
            settings = await settings_repo.get_settings(session)
            await settings_repo.update_test_results(session, settings, result.success, result.message)
        return result.model_dump()

    # -- sync runs -----------------------------------------------------------

    async def trigger_sync(
        self,
        mode: str = SyncMode.NORMAL,
        triggered_by: Optional[str] = None,
        sync_type: str = SyncType.MANUAL,
    ) -> Dict[str, Any]:
        """Start a pass in the background and acknowledge it.

        Configuration and concurrency problems raise immediately and create
        no run; the pass's own outcome is only visible through
        get_sync_status()/get_sync_history().
        """
        if mode not in SyncMode.ALL:
            raise ValueError(f"Unknown sync mode: {mode!r}")
        client = await self._load_client()
        orchestrator = DigiformaSyncOrchestrator(client, self.session_scope)
        run = await orchestrator.begin_sync(mode, triggered_by, sync_type)

        task = asyncio.create_task(orchestrator.run_sync(run.id, mode))
        self._tasks.add(task)
        task.add_done_callback(self._background_sync_done)
        return {"syncId": str(run.id), "status": run.status}

    def _background_sync_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background Digiforma sync was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background Digiforma sync ended with error: %s", exc)

    async def wait_for_background_syncs(self) -> None:
        """Block until every sync started by trigger_sync() has finished."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _orchestrator(self) -> DigiformaSyncOrchestrator:
        # Read-side queries never call the API.
        return DigiformaSyncOrchestrator(None, self.session_scope)

    async def get_sync_status(self) -> Dict[str, Any]:
        status = await self._orchestrator().get_sync_status()
        status["lastSync"] = serialize_sync_run(status["lastSync"])
        return status

    async def get_sync_history(self, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        if not 1 <= limit <= HISTORY_MAX_LIMIT:
            raise ValueError(f"limit must be between 1 and {HISTORY_MAX_LIMIT}")
        if offset < 0:
            raise ValueError("offset must be >= 0")
        history = await self._orchestrator().get_sync_history(limit, offset)
        return {
            "rows": [serialize_sync_run(run) for run in history["rows"]],
            "count": history["count"],
        }

    # -- matching review -----------------------------------------------------

    async def get_unmatched_companies(self) -> List[Dict[str, Any]]:
        async with self.session_scope() as session:
            companies = await companies_repo.list_unlinked(session)
        return [serialize_company(company) for company in companies]

    async def get_suggested_matches(self, company_id, limit: int = 5) -> List[Dict[str, Any]]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        company_uuid = _as_uuid(company_id, "company id")
        async with self.session_scope() as session:
            company = await companies_repo.get_by_id(session, company_uuid)
            if company is None:
                raise CompanyNotFoundError(f"Digiforma company {company_id} not found")
            suggestions = await DigiformaMatcher(session).get_suggested_matches(company, limit)
        return [s.model_dump(mode="json") for s in suggestions]

    async def create_manual_mapping(
        self,
        company_id,
        institution_id,
        confirmed_by: str,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        company_uuid = _as_uuid(company_id, "company id")
        institution_uuid = _as_uuid(institution_id, "institution id")
        async with self.session_scope() as session:
            company = await companies_repo.get_by_id(session, company_uuid)
            if company is None:
                raise CompanyNotFoundError(f"Digiforma company {company_id} not found")
            institution = await institutions_repo.get_by_id(session, institution_uuid)
            if institution is None:
                raise InstitutionNotFoundError(f"Institution {institution_id} not found")
            mapping = await mappings_repo.create_manual_mapping(
                session, company, institution.id, confirmed_by, notes
            )
            return serialize_mapping(mapping)

    async def delete_mapping(self, mapping_id) -> Dict[str, Any]:
        mapping_uuid = _as_uuid(mapping_id, "mapping id")
        async with self.session_scope() as session:
            mapping = await mappings_repo.get_by_id(session, mapping_uuid)
            if mapping is None:
                raise MappingNotFoundError(f"Mapping {mapping_id} not found")
            await mappings_repo.delete_mapping(session, mapping)
        return {"deleted": True, "id": str(mapping_uuid)}

    async def get_fuzzy_matches(self) -> List[Dict[str, Any]]:
        """Review queue with company and institution names alongside each mapping."""
        async with self.session_scope() as session:
            rows = []
            for mapping in await mappings_repo.list_fuzzy_matches(session):
                company = await companies_repo.get_by_id(session, mapping.digiforma_company_id)
                institution = await institutions_repo.get_by_id(session, mapping.institution_id)
                row = serialize_mapping(mapping)
                row["companyName"] = company.name if company is not None else None
                row["institutionName"] = institution.name if institution is not None else None
                row["isConfirmed"] = mapping.confirmed_at is not None
                rows.append(row)
        return rows

    async def confirm_mapping(self, mapping_id, user_id: str) -> Dict[str, Any]:
        mapping_uuid = _as_uuid(mapping_id, "mapping id")
        async with self.session_scope() as session:
            mapping = await mappings_repo.get_by_id(session, mapping_uuid)
            if mapping is None:
                raise MappingNotFoundError(f"Mapping {mapping_id} not found")
            await mappings_repo.confirm_mapping(session, mapping, user_id)
            return serialize_mapping(mapping)

    # -- institution views ---------------------------------------------------

    async def get_institution_company(self, institution_id) -> Dict[str, Any]:
        institution_uuid = _as_uuid(institution_id, "institution id")
        async with self.session_scope() as session:
            institution = await institutions_repo.get_by_id(session, institution_uuid)
            if institution is None:
                raise InstitutionNotFoundError(f"Institution {institution_id} not found")
            company = await companies_repo.get_by_institution(session, institution_uuid)
            mapping = None
            if company is not None:
                mapping = await mappings_repo.get_by_company_id(session, company.id)
            return {
                "company": serialize_company(company),
                "mapping": serialize_mapping(mapping),
            }

    async def get_institution_revenue(self, institution_id) -> Dict[str, Any]:
        institution_uuid = _as_uuid(institution_id, "institution id")
        async with self.session_scope() as session:
            institution = await institutions_repo.get_by_id(session, institution_uuid)
            if institution is None:
                raise InstitutionNotFoundError(f"Institution {institution_id} not found")
            revenue = await billing_repo.get_revenue_by_institution(session, institution_uuid)
            quotes = await billing_repo.list_quotes_by_institution(session, institution_uuid)
        return {
            "institutionId": str(institution_uuid),
            "total": float(revenue["total"]),
            "paid": float(revenue["paid"]),
            "unpaid": float(revenue["unpaid"]),
            "invoiceCount": revenue["invoiceCount"],
            "quoteCount": len(quotes),
            "acceptedQuoteCount": sum(1 for q in quotes if q.status == "accepted"),
        }
