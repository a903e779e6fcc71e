"""Mapping registry tests: manual overrides, confirmation, deletion."""
import pytest

from db.models import MatchType, WriteOrigin
from db.repositories import digiforma_companies as companies_repo
from db.repositories import institutions as institutions_repo
from db.repositories import mappings as mappings_repo
from schemas.digiforma import CompanyPayload


async def _company_and_institutions(session):
    payload = CompanyPayload.model_validate({"id": "df-1", "name": "Clinique Beaulieu"})
    company, _created = await companies_repo.upsert_company(session, payload)
    first = await institutions_repo.create(session, {"name": "Clinique Bellevue"}, WriteOrigin.SYNC)
    second = await institutions_repo.create(session, {"name": "Clinique Beaulieu"}, WriteOrigin.SYNC)
    return company, first, second


@pytest.mark.asyncio
async def test_manual_mapping_overwrites_in_place(session):
    """A manual mapping replaces the existing row instead of adding one."""
    company, first, second = await _company_and_institutions(session)
    fuzzy = await mappings_repo.record_match(
        session, company.id, first.id, MatchType.FUZZY, 78, "fuzzy_name_city"
    )

    manual = await mappings_repo.create_manual_mapping(
        session, company, second.id, "admin@example.com", notes="checked by phone"
    )

    assert manual.id == fuzzy.id
    assert manual.institution_id == second.id
    assert manual.match_type == MatchType.MANUAL
    assert manual.match_score == 100
    assert manual.match_criteria == "manual"
    assert manual.confirmed_by == "admin@example.com"
    assert manual.confirmed_at is not None
    assert manual.notes == "checked by phone"
    assert company.institution_id == second.id


@pytest.mark.asyncio
async def test_computed_match_never_overwrites_manual(session):
    """Auto and fuzzy results leave a manual mapping untouched."""
    company, first, second = await _company_and_institutions(session)
    await mappings_repo.create_manual_mapping(session, company, second.id, "admin@example.com")

    kept = await mappings_repo.record_match(
        session, company.id, first.id, MatchType.AUTO, 100, "siret"
    )

    assert kept.match_type == MatchType.MANUAL
    assert kept.institution_id == second.id


@pytest.mark.asyncio
async def test_record_match_rejects_manual_type(session):
    """Computed matches cannot be recorded as manual."""
    company, first, _second = await _company_and_institutions(session)
    with pytest.raises(ValueError):
        await mappings_repo.record_match(session, company.id, first.id, MatchType.MANUAL, 100, "manual")


@pytest.mark.asyncio
async def test_confirm_keeps_type_and_score(session):
    """Confirming stamps the reviewer but keeps match type and score."""
    company, first, _second = await _company_and_institutions(session)
    mapping = await mappings_repo.record_match(
        session, company.id, first.id, MatchType.FUZZY, 78, "fuzzy_name_city"
    )
    assert mapping.is_trusted is False

    await mappings_repo.confirm_mapping(session, mapping, "admin@example.com")

    assert mapping.match_type == MatchType.FUZZY
    assert mapping.match_score == 78
    assert mapping.confirmed_by == "admin@example.com"
    assert mapping.is_trusted is True
    assert company.institution_id == first.id


@pytest.mark.asyncio
async def test_retargeted_fuzzy_match_drops_confirmation(session):
    """Pointing a mapping at another institution clears its confirmation."""
    company, first, second = await _company_and_institutions(session)
    mapping = await mappings_repo.record_match(
        session, company.id, first.id, MatchType.FUZZY, 78, "fuzzy_name_city"
    )
    await mappings_repo.confirm_mapping(session, mapping, "admin@example.com")

    await mappings_repo.record_match(session, company.id, second.id, MatchType.FUZZY, 80, "fuzzy_name_city")

    assert mapping.institution_id == second.id
    assert mapping.confirmed_at is None
    assert mapping.is_trusted is False


@pytest.mark.asyncio
async def test_delete_unlinks_company(session):
    """Deleting a mapping also clears the company's institution link."""
    company, _first, second = await _company_and_institutions(session)
    mapping = await mappings_repo.create_manual_mapping(session, company, second.id, "admin@example.com")

    await mappings_repo.delete_mapping(session, mapping)

    assert await mappings_repo.get_by_company_id(session, company.id) is None
    assert company.institution_id is None
    assert await mappings_repo.get_by_institution_id(session, second.id) is None


@pytest.mark.asyncio
async def test_fuzzy_queue_sorted_by_score(session):
    """Unconfirmed fuzzy mappings are listed best score first."""
    company, first, second = await _company_and_institutions(session)
    other_payload = CompanyPayload.model_validate({"id": "df-2", "name": "Clinique Bellevue Est"})
    other, _created = await companies_repo.upsert_company(session, other_payload)
    await mappings_repo.record_match(session, company.id, first.id, MatchType.FUZZY, 72, "fuzzy_name_city")
    await mappings_repo.record_match(session, other.id, second.id, MatchType.FUZZY, 81, "fuzzy_name_city")

    queue = await mappings_repo.list_fuzzy_matches(session)
    assert [m.match_score for m in queue] == [81, 72]
