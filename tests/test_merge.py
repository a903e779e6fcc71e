"""Merge engine tests: lock rules, initial-mode backfill, institution creation."""
import pytest

from db.models import DataSource, MatchType, SyncMode, WriteOrigin
from db.repositories import contacts as contacts_repo
from db.repositories import digiforma_companies as companies_repo
from db.repositories import institutions as institutions_repo
from db.repositories import mappings as mappings_repo
from digiforma.merge import (
    CONTACT_EXTERNAL_ONLY,
    CONTACT_UNCHANGED,
    CONTACT_UPDATED,
    CREATED,
    LINKED,
    PENDING_REVIEW,
    DigiformaMerger,
)
from schemas.digiforma import PLACEHOLDER, ContactPayload, CompanyPayload, TraineePayload


async def _company(session, digiforma_id="df-1", **fields):
    payload = CompanyPayload.model_validate({"id": digiforma_id, "name": "Clinique Beausoleil", **fields})
    company, _created = await companies_repo.upsert_company(session, payload)
    return company


# ---------------------------------------------------------------------------
# Existing institutions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_locked_institution_only_gets_external_data(session):
    """A locked institution keeps its fields and only receives external data."""
    inst = await institutions_repo.create(
        session,
        {
            "name": "Clinique Beausoleil",
            "accounting_number": "411BEAU",
            "address": {"street": "1 rue A", "city": "Toulouse"},
        },
        WriteOrigin.USER,
    )
    company = await _company(
        session, accountingNumber="411BEAU", roadAddress="99 avenue B", city="Toulouse"
    )

    outcome = await DigiformaMerger(session, SyncMode.INITIAL).merge_company(company)

    assert outcome == LINKED
    assert inst.address == {"street": "1 rue A", "city": "Toulouse"}
    assert inst.is_locked is True
    assert inst.external_data["digiforma"]["id"] == "df-1"
    assert inst.external_data["digiforma"]["address"]["street"] == "99 avenue B"
    assert company.institution_id == inst.id

    mapping = await mappings_repo.get_by_company_id(session, company.id)
    assert mapping.match_type == MatchType.AUTO
    assert mapping.match_criteria == "accountingNumber"


@pytest.mark.asyncio
async def test_initial_mode_backfills_unlocked_address(session):
    """Initial mode fills the address of an unlocked institution."""
    inst = await institutions_repo.create(
        session,
        {
            "name": "Clinique Beausoleil",
            "siret": "12345678900011",
            "address": {"street": PLACEHOLDER, "city": "Toulouse"},
        },
        WriteOrigin.SYNC,
    )
    company = await _company(
        session,
        siret="12345678900011",
        roadAddress="12 rue des Lilas",
        city="Toulouse",
        cityCode="31000",
    )

    outcome = await DigiformaMerger(session, SyncMode.INITIAL).merge_company(company)

    assert outcome == LINKED
    assert inst.address["street"] == "12 rue des Lilas"
    assert inst.address["zipCode"] == "31000"
    assert inst.address["city"] == "Toulouse"
    assert inst.is_locked is False
    assert "digiforma" in inst.external_data


@pytest.mark.asyncio
async def test_normal_mode_leaves_unlocked_institution_alone(session):
    """Normal mode links without touching the institution."""
    address = {"street": "5 place Bellecour", "city": "Lyon"}
    inst = await institutions_repo.create(
        session,
        {"name": "Clinic A", "siret": "12345678900011", "address": dict(address)},
        WriteOrigin.SYNC,
    )
    company = await _company(
        session, name="Clinic A", siret="12345678900011", roadAddress="8 rue Neuve", city="Lyon"
    )

    outcome = await DigiformaMerger(session, SyncMode.NORMAL).merge_company(company)

    assert outcome == LINKED
    assert inst.address == address
    assert inst.external_data == {}
    assert company.institution_id == inst.id


@pytest.mark.asyncio
async def test_initial_mode_ignores_placeholder_street(session):
    """A placeholder street never overwrites a real address."""
    address = {"street": "5 place Bellecour", "city": "Lyon"}
    inst = await institutions_repo.create(
        session,
        {"name": "Clinic A", "siret": "12345678900011", "address": dict(address)},
        WriteOrigin.SYNC,
    )
    company = await _company(session, siret="12345678900011", roadAddress=PLACEHOLDER, city="Lyon")

    merger = DigiformaMerger(session, SyncMode.INITIAL)
    assert await merger.apply_to_institution(inst, company) is False
    assert inst.address == address


# ---------------------------------------------------------------------------
# Fuzzy review and relinking
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fuzzy_match_waits_for_confirmation(session):
    """A fuzzy match stays unlinked until a reviewer confirms it."""
    inst = await institutions_repo.create(
        session, {"name": "Clinique Bellevue", "address": {"city": "Paris"}}, WriteOrigin.SYNC
    )
    company = await _company(session, name="Clinique Beaulieu", city="Paris")
    merger = DigiformaMerger(session, SyncMode.NORMAL)

    assert await merger.merge_company(company) == PENDING_REVIEW
    assert company.institution_id is None
    mapping = await mappings_repo.get_by_company_id(session, company.id)
    assert mapping.match_type == MatchType.FUZZY
    assert mapping.confirmed_at is None
    assert await institutions_repo.count(session) == 1

    await mappings_repo.confirm_mapping(session, mapping, "admin@example.com")
    assert company.institution_id == inst.id
    assert mapping.is_trusted is True

    # A confirmed fuzzy mapping is trusted on the next pass.
    assert await merger.merge_company(company) == LINKED
    assert company.institution_id == inst.id
    assert (await mappings_repo.get_by_company_id(session, company.id)).match_type == MatchType.FUZZY


@pytest.mark.asyncio
async def test_institution_created_by_company_is_relinked(session):
    """An institution created from a company is found again by Digiforma id."""
    inst = await institutions_repo.create(
        session,
        {"name": "Centre Dentaire Horizon", "digiforma_id": "df-3"},
        WriteOrigin.SYNC,
        data_source=DataSource.DIGIFORMA,
    )
    company = await _company(session, digiforma_id="df-3", name="Horizon Dentaire SARL")

    outcome = await DigiformaMerger(session, SyncMode.NORMAL).merge_company(company)

    assert outcome == LINKED
    assert company.institution_id == inst.id
    mapping = await mappings_repo.get_by_company_id(session, company.id)
    assert mapping.match_criteria == "created"
    assert await institutions_repo.count(session) == 1


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unmatched_company_creates_institution_and_primary_contact(session):
    """An unmatched company creates a tagged institution and its primary contact."""
    company = await _company(
        session,
        digiforma_id="df-9",
        name="Centre Dentaire Horizon",
        city="Paris",
        accountingNumber="411HORI",
        email="contact@horizon.fr",
        contacts=[
            {"id": "k0", "lastname": "Sans Email"},
            {"id": "k1", "firstname": "Anne", "lastname": "Durand", "email": "Anne.Durand@Horizon.fr"},
        ],
    )

    outcome = await DigiformaMerger(session, SyncMode.NORMAL).merge_company(company)

    assert outcome == CREATED
    inst = await institutions_repo.get_by_id(session, company.institution_id)
    assert inst.data_source == DataSource.DIGIFORMA
    assert inst.is_locked is False
    assert inst.digiforma_id == "df-9"
    assert inst.accounting_number == "411HORI"
    assert inst.tags == ["digiforma", "formation"]
    assert inst.address["street"] == PLACEHOLDER
    assert inst.address["city"] == "Paris"

    contacts = await contacts_repo.list_by_institution(session, inst.id)
    assert len(contacts) == 1
    assert contacts[0].email == "anne.durand@horizon.fr"
    assert contacts[0].is_primary is True
    assert contacts[0].data_source == DataSource.DIGIFORMA

    shadow = await companies_repo.get_contact_by_digiforma_id(session, "k1")
    assert shadow.contact_id == contacts[0].id
    assert shadow.digiforma_company_id == company.id

    mapping = await mappings_repo.get_by_company_id(session, company.id)
    assert mapping.match_type == MatchType.AUTO
    assert mapping.match_criteria == "created"


@pytest.mark.asyncio
async def test_primary_contact_falls_back_to_company_email(session):
    """Without raw contact emails the company email becomes the primary contact."""
    company = await _company(
        session, digiforma_id="df-8", name="Centre Dentaire Horizon", email="Contact@Horizon.fr"
    )

    assert await DigiformaMerger(session).merge_company(company) == CREATED

    contacts = await contacts_repo.list_by_institution(session, company.institution_id)
    assert len(contacts) == 1
    assert contacts[0].email == "contact@horizon.fr"
    assert contacts[0].last_name == "Centre Dentaire Horizon"
    assert contacts[0].is_primary is True


# ---------------------------------------------------------------------------
# Contacts and trainees
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_locked_contact_only_gets_external_data(session):
    """A locked contact keeps its fields and only receives external data."""
    inst = await institutions_repo.create(session, {"name": "Clinique Beausoleil"}, WriteOrigin.SYNC)
    contact = await contacts_repo.create(
        session,
        inst.id,
        {"first_name": "Anne", "last_name": "Durand", "email": "anne@beausoleil.fr", "phone": "0102030405"},
        WriteOrigin.USER,
    )
    company = await _company(session)
    raw = ContactPayload(id="k1", firstname="Annie", lastname="Durand", email="ANNE@beausoleil.fr", phone="0600000000")

    found, outcome = await DigiformaMerger(session, SyncMode.INITIAL).reconcile_contact(inst, company, raw)

    assert outcome == CONTACT_EXTERNAL_ONLY
    assert found.id == contact.id
    assert contact.first_name == "Anne"
    assert contact.phone == "0102030405"
    assert contact.external_data["digiforma"]["firstname"] == "Annie"


@pytest.mark.asyncio
async def test_crm_contact_untouched_even_in_initial_mode(session):
    """A contact created in the CRM is never edited by a sync."""
    inst = await institutions_repo.create(session, {"name": "Clinique Beausoleil"}, WriteOrigin.SYNC)
    contact = await contacts_repo.create(
        session, inst.id, {"first_name": "Anne", "email": "anne@beausoleil.fr"}, WriteOrigin.SYNC
    )
    company = await _company(session)
    raw = ContactPayload(firstname="Annie", email="anne@beausoleil.fr")

    _found, outcome = await DigiformaMerger(session, SyncMode.INITIAL).reconcile_contact(inst, company, raw)

    assert outcome == CONTACT_UNCHANGED
    assert contact.first_name == "Anne"


async def _digiforma_contact(session):
    inst = await institutions_repo.create(session, {"name": "Clinique Beausoleil"}, WriteOrigin.SYNC)
    contact = await contacts_repo.create(
        session,
        inst.id,
        {"first_name": "Anne", "last_name": "Durand", "email": "anne@beausoleil.fr", "phone": "0102030405"},
        WriteOrigin.SYNC,
        data_source=DataSource.DIGIFORMA,
    )
    return inst, contact


@pytest.mark.asyncio
async def test_initial_mode_updates_unlocked_digiforma_contact(session):
    """An unlocked contact that came from Digiforma is refreshed in initial mode."""
    inst, contact = await _digiforma_contact(session)
    company = await _company(session)
    raw = ContactPayload(id="k1", firstname="Annie", lastname="Durand", email="anne@beausoleil.fr",
                         phone="0600000000", position="Directrice")

    found, outcome = await DigiformaMerger(session, SyncMode.INITIAL).reconcile_contact(inst, company, raw)

    assert outcome == CONTACT_UPDATED
    assert found.id == contact.id
    assert contact.first_name == "Annie"
    assert contact.phone == "0600000000"
    assert contact.title == "Directrice"
    assert contact.is_locked is False
    assert contact.data_source == DataSource.DIGIFORMA
    assert contact.external_data["digiforma"]["firstname"] == "Annie"


@pytest.mark.asyncio
async def test_normal_mode_leaves_digiforma_contact_alone(session):
    """Normal mode never edits an existing contact, whatever its source."""
    inst, contact = await _digiforma_contact(session)
    company = await _company(session)
    raw = ContactPayload(id="k1", firstname="Annie", email="anne@beausoleil.fr", phone="0600000000")

    _found, outcome = await DigiformaMerger(session, SyncMode.NORMAL).reconcile_contact(inst, company, raw)

    assert outcome == CONTACT_UNCHANGED
    assert contact.first_name == "Anne"
    assert contact.phone == "0102030405"
    assert contact.is_locked is False


@pytest.mark.asyncio
async def test_trainee_shadow_links_company_and_contact(session):
    """Trainees become shadow rows linked to their company and CRM contact."""
    inst = await institutions_repo.create(session, {"name": "Clinique Beausoleil"}, WriteOrigin.SYNC)
    contact = await contacts_repo.create(
        session, inst.id, {"last_name": "Martin", "email": "paul.martin@beausoleil.fr"}, WriteOrigin.SYNC
    )
    company = await _company(session)
    await companies_repo.link_to_institution(session, company, inst.id)
    trainee = TraineePayload.model_validate({
        "id": 501,
        "firstname": "Paul",
        "lastname": "Martin",
        "email": "Paul.Martin@Beausoleil.fr",
        "company": {"id": "df-1"},
    })
    merger = DigiformaMerger(session)

    shadow, created = await merger.reconcile_trainee(trainee)
    assert created is True
    assert shadow.digiforma_id == "501"
    assert shadow.digiforma_company_id == company.id
    assert shadow.contact_id == contact.id
    assert shadow.metadata_["trainee"] is True

    _shadow, created = await merger.reconcile_trainee(trainee)
    assert created is False
    assert await contacts_repo.list_by_institution(session, inst.id) == [contact]
