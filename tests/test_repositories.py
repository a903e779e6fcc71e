"""Integration tests for core repository methods (SQLite via aiosqlite)."""
from decimal import Decimal

import pytest

from db.models import DataSource, SyncStatus, WriteOrigin
from db.repositories import billing as billing_repo
from db.repositories import contacts as contacts_repo
from db.repositories import digiforma_companies as companies_repo
from db.repositories import institutions as institutions_repo
from db.repositories import settings as settings_repo
from db.repositories import sync_runs as sync_runs_repo
from schemas.digiforma import CompanyPayload, InvoicePayload, QuotePayload


# ---------------------------------------------------------------------------
# Institutions and contacts: lock rules
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_user_created_institution_is_locked(session):
    """User-created institutions are locked as manual creations."""
    inst = await institutions_repo.create(session, {"name": "Clinique Beausoleil"}, WriteOrigin.USER)
    assert inst.is_locked is True
    assert inst.locked_reason == "manual_creation"
    assert inst.locked_at is not None
    assert inst.data_source == DataSource.CRM


@pytest.mark.asyncio
async def test_sync_writes_never_lock(session):
    """Sync-origin creates and updates leave the record unlocked."""
    inst = await institutions_repo.create(
        session, {"name": "Clinique Beausoleil"}, WriteOrigin.SYNC, data_source=DataSource.DIGIFORMA
    )
    await institutions_repo.update(session, inst, {"type": "hospital"}, WriteOrigin.SYNC)
    assert inst.is_locked is False
    assert inst.locked_reason is None
    assert inst.data_source == DataSource.DIGIFORMA


@pytest.mark.asyncio
async def test_user_edit_locks_unlocked_institution(session):
    """A user edit locks the institution as a manual edit."""
    inst = await institutions_repo.create(session, {"name": "Clinique Beausoleil"}, WriteOrigin.SYNC)
    await institutions_repo.update(session, inst, {"name": "Clinique Beausoleil Toulouse"}, WriteOrigin.USER)
    assert inst.is_locked is True
    assert inst.locked_reason == "manual_edit"


@pytest.mark.asyncio
async def test_unknown_origin_and_fields_rejected(session):
    """Unknown write origins and non-editable fields are rejected."""
    with pytest.raises(ValueError):
        await institutions_repo.create(session, {"name": "X"}, "robot")
    with pytest.raises(ValueError):
        await institutions_repo.create(session, {"name": "X", "is_locked": False}, WriteOrigin.SYNC)


@pytest.mark.asyncio
async def test_external_data_written_on_locked_institution(session):
    """External data can still be written on a locked institution."""
    inst = await institutions_repo.create(
        session,
        {"name": "Clinique Beausoleil", "address": {"street": "1 rue A", "city": "Toulouse"}},
        WriteOrigin.USER,
    )
    await institutions_repo.record_external_data(session, inst, "digiforma", {"id": "df-1"})
    assert inst.name == "Clinique Beausoleil"
    assert inst.address == {"street": "1 rue A", "city": "Toulouse"}
    assert inst.external_data == {"digiforma": {"id": "df-1"}}
    assert "digiforma" in inst.last_sync_at


@pytest.mark.asyncio
async def test_siret_lookup_checks_external_data(session):
    """SIRET lookup also finds values stored in Digiforma external data."""
    inst = await institutions_repo.create(session, {"name": "Clinique Beausoleil"}, WriteOrigin.SYNC)
    await institutions_repo.record_external_data(
        session, inst, "digiforma", {"siret": "12345678900011"}
    )
    found = await institutions_repo.get_by_siret(session, "12345678900011")
    assert found is not None
    assert found.id == inst.id


@pytest.mark.asyncio
async def test_contact_email_lookup_is_case_insensitive(session):
    """Contact email lookup ignores case."""
    inst = await institutions_repo.create(session, {"name": "Clinique Beausoleil"}, WriteOrigin.SYNC)
    contact = await contacts_repo.create(
        session, inst.id, {"last_name": "Durand", "email": "Anne.Durand@Beausoleil.fr"}, WriteOrigin.USER
    )
    assert contact.is_locked is True

    assert (await contacts_repo.find_by_email(session, "anne.durand@beausoleil.fr")).id == contact.id
    found = await contacts_repo.find_in_institution_by_email(session, inst.id, " ANNE.DURAND@beausoleil.fr ")
    assert found.id == contact.id
    assert await contacts_repo.has_primary(session, inst.id) is False


# ---------------------------------------------------------------------------
# Shadow records
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_company_upsert_keeps_institution_link(session):
    """Re-upserting a company keeps its institution link."""
    payload = CompanyPayload.model_validate({"id": "df-1", "name": "Clinique Beausoleil"})
    company, created = await companies_repo.upsert_company(session, payload)
    assert created is True

    inst = await institutions_repo.create(session, {"name": "Clinique Beausoleil"}, WriteOrigin.SYNC)
    await companies_repo.link_to_institution(session, company, inst.id)

    renamed = CompanyPayload.model_validate({"id": "df-1", "name": "Clinique Beausoleil SA"})
    again, created = await companies_repo.upsert_company(session, renamed)
    assert created is False
    assert again.id == company.id
    assert again.name == "Clinique Beausoleil SA"
    assert again.institution_id == inst.id
    assert await companies_repo.count_companies(session) == (1, 1)


@pytest.mark.asyncio
async def test_company_without_id_rejected(session):
    """A company payload without an id is rejected."""
    with pytest.raises(ValueError):
        await companies_repo.upsert_company(session, CompanyPayload.model_validate({"name": "Nameless"}))


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_bearer_token_stored_encrypted(session):
    """The bearer token is stored encrypted and decrypts back."""
    settings = await settings_repo.get_settings(session)
    assert settings.is_configured() is False
    assert settings_repo.get_decrypted_token(settings) is None

    await settings_repo.set_bearer_token(session, settings, "secret-token")
    assert settings.bearer_token != "secret-token"
    assert settings_repo.get_decrypted_token(settings) == "secret-token"

    same = await settings_repo.get_settings(session)
    assert same.id == settings.id


@pytest.mark.asyncio
async def test_changed_encryption_key_cannot_decrypt(session, monkeypatch):
    """A changed encryption key fails loudly instead of returning garbage."""
    settings = await settings_repo.get_settings(session)
    await settings_repo.set_bearer_token(session, settings, "secret-token")
    monkeypatch.setenv("DIGIFORMA_ENCRYPTION_KEY", "another-secret")
    with pytest.raises(RuntimeError):
        settings_repo.get_decrypted_token(settings)


@pytest.mark.asyncio
async def test_invalid_sync_frequency_rejected(session):
    """Only the supported sync frequencies are accepted."""
    settings = await settings_repo.get_settings(session)
    with pytest.raises(ValueError):
        await settings_repo.update_config(session, settings, sync_frequency="hourly")


# ---------------------------------------------------------------------------
# Sync runs
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sync_run_lifecycle(session):
    """A run moves from pending to in progress to a final status."""
    run = await sync_runs_repo.create(session, triggered_by="admin@example.com")
    assert run.status == SyncStatus.PENDING
    assert all(getattr(run, field) == 0 for field in sync_runs_repo.COUNTER_FIELDS)

    await sync_runs_repo.set_status(session, run, SyncStatus.IN_PROGRESS)
    assert (await sync_runs_repo.get_in_progress(session)).id == run.id

    with pytest.raises(ValueError):
        await sync_runs_repo.complete(session, run, SyncStatus.IN_PROGRESS)

    await sync_runs_repo.add_error(session, run, "MERGE_FAILED", "boom", {"companyId": "4"})
    await sync_runs_repo.update_progress(session, run, {"companies_synced": 5})
    await sync_runs_repo.complete(session, run, SyncStatus.PARTIAL)

    assert run.completed_at is not None
    assert run.companies_synced == 5
    assert run.errors == [{"type": "MERGE_FAILED", "message": "boom", "details": {"companyId": "4"}}]
    assert await sync_runs_repo.get_in_progress(session) is None
    assert await sync_runs_repo.get_last_successful(session) is None


@pytest.mark.asyncio
async def test_sync_history_pages_with_total(session):
    """History is paged newest first with a total count."""
    for _ in range(3):
        run = await sync_runs_repo.create(session)
        await sync_runs_repo.complete(session, run, SyncStatus.SUCCESS)
    rows, count = await sync_runs_repo.get_history(session, limit=2, offset=0)
    assert len(rows) == 2
    assert count == 3


# ---------------------------------------------------------------------------
# Quotes, invoices, revenue
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_quote_upsert_reports_created_then_updated(session):
    """Quote upserts report creation once, then updates."""
    payload = QuotePayload.model_validate({
        "id": "q-1",
        "numberStr": "DEV-001",
        "date": "2026-01-10",
        "items": [{"quantity": 2, "unitPrice": 500, "vat": 20}],
    })
    quote, created = await billing_repo.upsert_quote(session, payload, None, None)
    assert created is True
    assert quote.status == "sent"
    assert quote.total_amount == Decimal("1200.00")

    accepted = payload.model_copy(update={"accepted_at": "2026-01-20"})
    again, created = await billing_repo.upsert_quote(session, accepted, None, None)
    assert created is False
    assert again.id == quote.id
    assert again.status == "accepted"
    assert again.accepted_date is not None


@pytest.mark.asyncio
async def test_revenue_by_institution(session):
    """Revenue sums totals and payments of an institution's invoices."""
    inst = await institutions_repo.create(session, {"name": "Clinique Beausoleil"}, WriteOrigin.SYNC)
    paid = InvoicePayload.model_validate({
        "id": "inv-1",
        "items": [{"quantity": 1, "unitPrice": 1000, "vat": 0}],
        "invoicePayments": [{"amount": 1000, "date": "2026-02-01"}],
    })
    open_invoice = InvoicePayload.model_validate({
        "id": "inv-2",
        "items": [{"quantity": 1, "unitPrice": 500, "vat": 0}],
        "invoicePayments": [{"amount": 200, "date": "2026-02-03"}],
    })
    row, _created = await billing_repo.upsert_invoice(session, paid, None, inst.id)
    assert row.status == "paid"
    assert row.paid_date is not None
    row, _created = await billing_repo.upsert_invoice(session, open_invoice, None, inst.id)
    assert row.status == "partially_paid"
    assert row.paid_date is None

    revenue = await billing_repo.get_revenue_by_institution(session, inst.id)
    assert revenue == {
        "total": Decimal("1500.00"),
        "paid": Decimal("1200.00"),
        "unpaid": Decimal("300.00"),
        "invoiceCount": 2,
    }


def test_parse_date_treats_naive_as_utc():
    """Naive timestamps are read as UTC."""
    parsed = billing_repo.parse_date("2026-01-10T08:30:00")
    assert parsed.tzinfo is not None
    assert parsed.utcoffset().total_seconds() == 0
    assert billing_repo.parse_date("not a date") is None
    assert billing_repo.parse_date(None) is None
