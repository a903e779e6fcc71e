"""Unit tests for name/city normalization and payload schemas."""
from decimal import Decimal

from digiforma.normalize import normalize_city, normalize_name, normalize_zip, strip_accents
from schemas.digiforma import (
    PLACEHOLDER,
    CompanyPayload,
    InvoicePayload,
    LineItem,
    QuotePayload,
    is_placeholder,
)


class TestNormalizeName:
    def test_strips_institution_boilerplate(self):
        assert normalize_name("Centre Hospitalier Universitaire de Lyon") == "lyon"
        assert normalize_name("CHU de Lyon") == "lyon"

    def test_saint_and_st_reduce_to_the_same_name(self):
        assert normalize_name("Clinique Saint-Martin") == "martin"
        assert normalize_name("Clinique St Martin") == "martin"

    def test_drops_accents_and_apostrophes(self):
        assert normalize_name("Clinique de l'Espérance") == "lesperance"

    def test_empty_values(self):
        assert normalize_name(None) == ""
        assert normalize_name("") == ""


class TestNormalizeCityAndZip:
    def test_city_connectors_removed_and_joined(self):
        assert normalize_city("Lyon-sur-Rhône") == "lyonrhone"

    def test_city_none(self):
        assert normalize_city(None) == ""

    def test_zip_whitespace_removed(self):
        assert normalize_zip(" 69 003 ") == "69003"
        assert normalize_zip(None) == ""

    def test_strip_accents(self):
        assert strip_accents("Hôpital Élise") == "Hopital Elise"


class TestPayloads:
    def test_placeholder_detection(self):
        assert is_placeholder(PLACEHOLDER)
        assert is_placeholder("  ")
        assert is_placeholder(None)
        assert not is_placeholder("12 rue des Lilas")

    def test_company_ids_coerced_to_strings(self):
        payload = CompanyPayload.model_validate({
            "id": 42,
            "name": "Clinique Beaulieu",
            "cityCode": 75012,
            "contacts": None,
            "unknownField": "ignored",
        })
        assert payload.id == "42"
        assert payload.city_code == "75012"
        assert payload.contacts == []
        assert payload.address().to_dict()["zipCode"] == "75012"

    def test_line_item_total_includes_vat(self):
        item = LineItem.model_validate({"quantity": 2, "unitPrice": 100, "vat": 20})
        assert item.total() == Decimal("240")

    def test_quote_status_follows_acceptance(self):
        assert QuotePayload.model_validate({"id": "q1"}).status() == "sent"
        accepted = QuotePayload.model_validate({"id": "q1", "acceptedAt": "2026-03-01"})
        assert accepted.status() == "accepted"

    def test_invoice_partially_paid(self):
        invoice = InvoicePayload.model_validate({
            "id": "i1",
            "items": [{"quantity": 1, "unitPrice": 1000, "vat": 0}],
            "invoicePayments": [{"amount": 400, "date": "2026-02-01"}],
        })
        assert invoice.total_amount() == Decimal("1000.00")
        assert invoice.paid_amount() == Decimal("400.00")
        assert invoice.status() == "partially_paid"

    def test_invoice_fully_paid_reports_last_payment(self):
        invoice = InvoicePayload.model_validate({
            "id": "i2",
            "items": [{"quantity": 1, "unitPrice": 1000, "vat": 0}],
            "invoicePayments": [
                {"amount": 600, "date": "2026-02-01"},
                {"amount": 400, "date": "2026-03-15"},
            ],
        })
        assert invoice.status() == "paid"
        assert invoice.last_payment_date == "2026-03-15"

    def test_billing_company_reference(self):
        quote = QuotePayload.model_validate({
            "id": "q2",
            "numberStr": "DEV-0002",
            "customer": {"id": "cust-1", "entity": {"id": 7, "name": "Clinique Beaulieu"}},
        })
        assert quote.company_digiforma_id == "7"
        assert quote.display_number == "DEV-0002"
