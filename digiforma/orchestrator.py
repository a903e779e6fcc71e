"""Sync orchestrator — one Digiforma → CRM synchronization pass.

Run lifecycle: pending -> in_progress -> success | partial | error.

Phases run sequentially: companies, merge, contacts, quotes, invoices. Each
item (company, contact, quote, invoice) is written in its own transaction so
one bad record only costs itself: the failure is appended to the run's error
list and the pass carries on (final status "partial"). A failure outside the
per-item loops (e.g. Digiforma unreachable) marks the run "error" and is
re-raised to the caller.

At most one run may be in progress; the guard is a query on persisted run
status, so it holds across processes. Check-then-create is not atomic; two
starts racing within milliseconds could both pass. Runs are triggered by hand
or on a daily/weekly schedule, so this window is accepted.
"""
import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from db.models import DigiformaSync, SyncMode, SyncStatus, SyncType
from db.repositories import billing as billing_repo
from db.repositories import digiforma_companies as companies_repo
from db.repositories import institutions as institutions_repo
from db.repositories import settings as settings_repo
from db.repositories import sync_runs as sync_runs_repo
from digiforma.exceptions import SyncAlreadyRunningError
from digiforma.merge import (
    CONTACT_CREATED,
    CONTACT_EXTERNAL_ONLY,
    CONTACT_UPDATED,
    DigiformaMerger,
)
from schemas.digiforma import (
    CompanyMetadata,
    CompanyPayload,
    InvoicePayload,
    QuotePayload,
    TraineePayload,
)

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager]

COMPANY_SYNC_FAILED = "COMPANY_SYNC_FAILED"
MERGE_FAILED = "MERGE_FAILED"
CONTACT_SYNC_FAILED = "CONTACT_SYNC_FAILED"
QUOTE_SYNC_FAILED = "QUOTE_SYNC_FAILED"
INVOICE_SYNC_FAILED = "INVOICE_SYNC_FAILED"
SYNC_FAILED = "SYNC_FAILED"


class _Tally:
    """created/updated/synced counters for one entity kind."""

    def __init__(self, entity: str):
        self.entity = entity
        self.synced = 0
        self.created = 0
        self.updated = 0

    def as_progress(self) -> Dict[str, int]:
        return {
            f"{self.entity}_synced": self.synced,
            f"{self.entity}_created": self.created,
            f"{self.entity}_updated": self.updated,
        }


class DigiformaSyncOrchestrator:
    """Drives sync passes.

    client: a DigiformaClient (or anything with the same fetch_* methods).
    session_scope: zero-argument callable returning an async context manager
        that yields an AsyncSession and commits on exit, e.g. db.get_db.
    """

    def __init__(self, client, session_scope: SessionScope):
        self.client = client
        self.session_scope = session_scope

    # -- run lifecycle -------------------------------------------------------

    async def begin_sync(
        self,
        mode: str = SyncMode.NORMAL,
        triggered_by: Optional[str] = None,
        sync_type: str = SyncType.MANUAL,
    ) -> DigiformaSync:
        """Create a run and move it to in_progress.

        Raises SyncAlreadyRunningError, without creating a row, when another
        run is in progress.
        """
        run = None
        async with self.session_scope() as session:
            running = await sync_runs_repo.get_in_progress(session)
            if running is None:
                run = await sync_runs_repo.create(session, sync_type, mode, triggered_by)
                await sync_runs_repo.set_status(session, run, SyncStatus.IN_PROGRESS)
        if running is not None:
            logger.warning("Refusing to start sync: run %s is still in progress", running.id)
            raise SyncAlreadyRunningError(running.id)

        logger.info(
            "Started Digiforma sync %s (mode=%s, type=%s, by=%s)",
            run.id,
            mode,
            sync_type,
            triggered_by,
        )
        return run

    async def start_full_sync(
        self,
        mode: str = SyncMode.NORMAL,
        triggered_by: Optional[str] = None,
        sync_type: str = SyncType.MANUAL,
    ) -> DigiformaSync:
        """Run a complete pass and return the finished run."""
        run = await self.begin_sync(mode, triggered_by, sync_type)
        return await self.run_sync(run.id, mode)

    async def run_sync(self, sync_id: UUID, mode: str = SyncMode.NORMAL) -> DigiformaSync:
        """Execute every phase for an in-progress run and complete it."""
        error_count = 0
        try:
            error_count += await self._sync_companies(sync_id)
            error_count += await self._merge_with_crm(sync_id, mode)
            error_count += await self._sync_contacts(sync_id, mode)
            error_count += await self._sync_quotes(sync_id)
            error_count += await self._sync_invoices(sync_id)
        except Exception as exc:
            logger.exception("Digiforma sync %s failed", sync_id)
            async with self.session_scope() as session:
                run = await sync_runs_repo.get_by_id(session, sync_id)
                await sync_runs_repo.add_error(
                    session, run, SYNC_FAILED, str(exc), {"exception": type(exc).__name__}
                )
                await sync_runs_repo.complete(session, run, SyncStatus.ERROR)
            raise

        status = SyncStatus.PARTIAL if error_count else SyncStatus.SUCCESS
        async with self.session_scope() as session:
            run = await sync_runs_repo.get_by_id(session, sync_id)
            await sync_runs_repo.complete(session, run, status)
            settings = await settings_repo.get_settings(session)
            await settings_repo.update_last_sync(session, settings)

        logger.info("Digiforma sync %s completed: %s (%d errors)", sync_id, status, error_count)
        return run

    async def _record_error(
        self, sync_id: UUID, error_type: str, exc: Exception, details: Dict[str, Any]
    ) -> None:
        async with self.session_scope() as session:
            run = await sync_runs_repo.get_by_id(session, sync_id)
            await sync_runs_repo.add_error(session, run, error_type, str(exc), details)

    async def _save_progress(self, sync_id: UUID, tally: _Tally) -> None:
        async with self.session_scope() as session:
            run = await sync_runs_repo.get_by_id(session, sync_id)
            await sync_runs_repo.update_progress(session, run, tally.as_progress())

    # -- phases --------------------------------------------------------------
    # Each phase returns the number of per-item errors it recorded.

    async def _sync_companies(self, sync_id: UUID) -> int:
        records = await asyncio.to_thread(self.client.fetch_companies)
        tally = _Tally("companies")
        tally.synced = len(records)
        errors = 0

        for record in records:
            company_id = record.get("id") if isinstance(record, dict) else None
            if not company_id:
                logger.warning("Skipping Digiforma company without id: %r", record)
                continue
            try:
                payload = CompanyPayload.model_validate(record)
                async with self.session_scope() as session:
                    _company, created = await companies_repo.upsert_company(session, payload)
            except Exception as exc:
                logger.error("Failed to sync Digiforma company %s: %s", company_id, exc)
                await self._record_error(
                    sync_id, COMPANY_SYNC_FAILED, exc, {"companyId": str(company_id)}
                )
                errors += 1
                continue
            if created:
                tally.created += 1
            else:
                tally.updated += 1

        await self._save_progress(sync_id, tally)
        logger.info(
            "Digiforma companies synced: %d total, %d created, %d updated",
            tally.synced,
            tally.created,
            tally.updated,
        )
        return errors

    async def _merge_with_crm(self, sync_id: UUID, mode: str) -> int:
        async with self.session_scope() as session:
            unlinked = [(c.id, c.digiforma_id) for c in await companies_repo.list_unlinked(session)]
            linked = [(c.id, c.digiforma_id) for c in await companies_repo.list_linked(session)]

        errors = 0
        outcomes: Dict[str, int] = {}
        for company_id, digiforma_id in unlinked:
            try:
                async with self.session_scope() as session:
                    company = await companies_repo.get_by_id(session, company_id)
                    outcome = await DigiformaMerger(session, mode).merge_company(company)
            except Exception as exc:
                logger.error("Failed to merge Digiforma company %s: %s", digiforma_id, exc)
                await self._record_error(
                    sync_id,
                    MERGE_FAILED,
                    exc,
                    {"companyId": digiforma_id, "digiformaCompanyId": str(company_id)},
                )
                errors += 1
                continue
            outcomes[outcome] = outcomes.get(outcome, 0) + 1

        # Companies linked by earlier runs: re-apply lock rules so locked
        # institutions keep receiving the external-data side channel.
        for company_id, digiforma_id in linked:
            try:
                async with self.session_scope() as session:
                    company = await companies_repo.get_by_id(session, company_id)
                    institution = await institutions_repo.get_by_id(session, company.institution_id)
                    if institution is not None:
                        await DigiformaMerger(session, mode).apply_to_institution(institution, company)
            except Exception as exc:
                logger.error("Failed to refresh institution for company %s: %s", digiforma_id, exc)
                await self._record_error(
                    sync_id,
                    MERGE_FAILED,
                    exc,
                    {"companyId": digiforma_id, "digiformaCompanyId": str(company_id)},
                )
                errors += 1

        logger.info(
            "Digiforma-CRM merge completed: %d unlinked companies processed %s, %d linked refreshed",
            len(unlinked),
            outcomes,
            len(linked),
        )
        return errors

    async def _sync_contacts(self, sync_id: UUID, mode: str) -> int:
        async with self.session_scope() as session:
            companies = [
                (c.id, c.digiforma_id, CompanyMetadata.model_validate(c.metadata_ or {}).contacts)
                for c in await companies_repo.list_linked(session)
            ]

        tally = _Tally("contacts")
        errors = 0
        for company_id, digiforma_id, raw_contacts in companies:
            for index, raw in enumerate(raw_contacts):
                if raw.normalized_email is None:
                    continue
                tally.synced += 1
                try:
                    async with self.session_scope() as session:
                        company = await companies_repo.get_by_id(session, company_id)
                        institution = await institutions_repo.get_by_id(
                            session, company.institution_id
                        )
                        _contact, outcome = await DigiformaMerger(session, mode).reconcile_contact(
                            institution, company, raw, make_primary=index == 0
                        )
                except Exception as exc:
                    logger.error(
                        "Failed to sync contact %s of company %s: %s", raw.email, digiforma_id, exc
                    )
                    await self._record_error(
                        sync_id,
                        CONTACT_SYNC_FAILED,
                        exc,
                        {"companyId": digiforma_id, "contactId": raw.id, "email": raw.email},
                    )
                    errors += 1
                    continue
                if outcome == CONTACT_CREATED:
                    tally.created += 1
                elif outcome in (CONTACT_UPDATED, CONTACT_EXTERNAL_ONLY):
                    tally.updated += 1

        errors += await self._sync_trainees(sync_id, mode, tally)
        await self._save_progress(sync_id, tally)
        logger.info(
            "Digiforma contacts synced: %d processed, %d created, %d updated",
            tally.synced,
            tally.created,
            tally.updated,
        )
        return errors

    async def _sync_trainees(self, sync_id: UUID, mode: str, tally: _Tally) -> int:
        records = await asyncio.to_thread(self.client.fetch_trainees)
        errors = 0
        for record in records:
            trainee_id = record.get("id") if isinstance(record, dict) else None
            if not trainee_id:
                logger.warning("Skipping Digiforma trainee without id: %r", record)
                continue
            tally.synced += 1
            try:
                payload = TraineePayload.model_validate(record)
                async with self.session_scope() as session:
                    _shadow, created = await DigiformaMerger(session, mode).reconcile_trainee(payload)
            except Exception as exc:
                logger.error("Failed to sync Digiforma trainee %s: %s", trainee_id, exc)
                await self._record_error(
                    sync_id, CONTACT_SYNC_FAILED, exc, {"traineeId": str(trainee_id)}
                )
                errors += 1
                continue
            if created:
                tally.created += 1
            else:
                tally.updated += 1
        return errors

    async def _sync_billing(
        self,
        sync_id: UUID,
        entity: str,
        fetch: Callable[[], List[Dict[str, Any]]],
        payload_type,
        upsert,
        error_type: str,
        id_key: str,
    ) -> int:
        records = await asyncio.to_thread(fetch)
        tally = _Tally(entity)
        tally.synced = len(records)
        errors = 0

        for record in records:
            record_id = record.get("id") if isinstance(record, dict) else None
            if not record_id:
                logger.warning("Skipping Digiforma %s record without id", entity)
                continue
            try:
                payload = payload_type.model_validate(record)
                async with self.session_scope() as session:
                    company = None
                    if payload.company_digiforma_id:
                        company = await companies_repo.get_by_digiforma_id(
                            session, payload.company_digiforma_id
                        )
                    _row, created = await upsert(
                        session,
                        payload,
                        company.id if company is not None else None,
                        company.institution_id if company is not None else None,
                    )
            except Exception as exc:
                logger.error("Failed to sync Digiforma %s %s: %s", entity, record_id, exc)
                await self._record_error(sync_id, error_type, exc, {id_key: str(record_id)})
                errors += 1
                continue
            if created:
                tally.created += 1
            else:
                tally.updated += 1

        await self._save_progress(sync_id, tally)
        logger.info(
            "Digiforma %s synced: %d total, %d created, %d updated",
            entity,
            tally.synced,
            tally.created,
            tally.updated,
        )
        return errors

    async def _sync_quotes(self, sync_id: UUID) -> int:
        return await self._sync_billing(
            sync_id,
            "quotes",
            self.client.fetch_quotations,
            QuotePayload,
            billing_repo.upsert_quote,
            QUOTE_SYNC_FAILED,
            "quoteId",
        )

    async def _sync_invoices(self, sync_id: UUID) -> int:
        return await self._sync_billing(
            sync_id,
            "invoices",
            self.client.fetch_invoices,
            InvoicePayload,
            billing_repo.upsert_invoice,
            INVOICE_SYNC_FAILED,
            "invoiceId",
        )

    # -- read side -----------------------------------------------------------

    async def get_sync_status(self) -> Dict[str, Any]:
        """Last successful run, whether one is running, shadow-company link counts."""
        async with self.session_scope() as session:
            last_sync = await sync_runs_repo.get_last_successful(session)
            running = await sync_runs_repo.get_in_progress(session)
            total, linked = await companies_repo.count_companies(session)
        return {
            "lastSync": last_sync,
            "isRunning": running is not None,
            "stats": {
                "totalCompanies": total,
                "linkedCompanies": linked,
                "unlinkedCompanies": total - linked,
            },
        }

    async def get_sync_history(self, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        async with self.session_scope() as session:
            rows, count = await sync_runs_repo.get_history(session, limit, offset)
        return {"rows": rows, "count": count}
