"""Digiforma payload schemas.

Digiforma owns its GraphQL schema and changes it independently, so every field
here is optional and unknown keys are ignored. These models give the matching
and merge engines typed access to the handful of fields they actually read;
the raw dicts are still stored verbatim in the JSON columns.
"""
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

PLACEHOLDER = "Non renseigné"

# Values that mean "no real street address" on either side.
_PLACEHOLDER_VALUES = {"", "non renseigne", "non renseigné", "n/a", "na", "-", "inconnu", "unknown"}


def is_placeholder(value: Optional[str]) -> bool:
    """True when value is empty or one of the filler strings used for required fields."""
    if value is None:
        return True
    return value.strip().lower() in _PLACEHOLDER_VALUES


def _to_str(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    return str(value)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ---------------------------------------------------------------------------
# Companies and their contacts
# ---------------------------------------------------------------------------


class ContactPayload(_Payload):
    """One entry of companies.contacts."""

    id: Optional[str] = None
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    position: Optional[str] = None
    title: Optional[str] = None
    civility: Optional[str] = None

    @field_validator("id", "phone", mode="before")
    @classmethod
    def coerce_to_str(cls, value):
        return _to_str(value)

    @property
    def normalized_email(self) -> Optional[str]:
        if not self.email or not self.email.strip():
            return None
        return self.email.strip().lower()

    @property
    def role(self) -> Optional[str]:
        return self.position or self.title


class AddressPayload(_Payload):
    """Address bag shared by shadow companies and institutions."""

    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = Field(default=None, alias="zipCode")
    country: Optional[str] = None

    @field_validator("zip_code", mode="before")
    @classmethod
    def coerce_to_str(cls, value):
        return _to_str(value)

    def to_dict(self) -> dict:
        return {
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "zipCode": self.zip_code,
            "country": self.country,
        }


class CompanyMetadata(_Payload):
    """Typed view of DigiformaCompany.metadata."""

    accounting_number: Optional[str] = Field(default=None, alias="accountingNumber")
    ape: Optional[str] = None
    code: Optional[str] = None
    city_code: Optional[str] = Field(default=None, alias="cityCode")
    note: Optional[str] = None
    employees_count: Optional[int] = Field(default=None, alias="employeesCount")
    contacts: List[ContactPayload] = Field(default_factory=list)

    @field_validator("accounting_number", "city_code", "code", mode="before")
    @classmethod
    def coerce_to_str(cls, value):
        return _to_str(value)

    @field_validator("contacts", mode="before")
    @classmethod
    def none_to_list(cls, value):
        return value or []


class CompanyPayload(_Payload):
    """One record of the `companies` query."""

    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    accounting_number: Optional[str] = Field(default=None, alias="accountingNumber")
    ape: Optional[str] = None
    city: Optional[str] = None
    city_code: Optional[str] = Field(default=None, alias="cityCode")
    code: Optional[str] = None
    country: Optional[str] = None
    employees_count: Optional[int] = Field(default=None, alias="employeesCount")
    note: Optional[str] = None
    road_address: Optional[str] = Field(default=None, alias="roadAddress")
    siret: Optional[str] = None
    website: Optional[str] = None
    contacts: List[ContactPayload] = Field(default_factory=list)

    @field_validator(
        "id", "accounting_number", "city_code", "code", "siret", "phone", mode="before"
    )
    @classmethod
    def coerce_to_str(cls, value):
        return _to_str(value)

    @field_validator("contacts", mode="before")
    @classmethod
    def none_to_list(cls, value):
        return value or []

    def address(self) -> AddressPayload:
        return AddressPayload(
            street=self.road_address or None,
            city=self.city or None,
            zip_code=self.city_code or None,
            country=self.country or None,
        )

    def shadow_metadata(self) -> dict:
        """Metadata bag stored on DigiformaCompany (raw contacts included)."""
        return {
            "accountingNumber": self.accounting_number,
            "ape": self.ape,
            "code": self.code,
            "cityCode": self.city_code,
            "note": self.note,
            "employeesCount": self.employees_count,
            "contacts": [c.model_dump(exclude_none=True) for c in self.contacts],
        }


# ---------------------------------------------------------------------------
# Trainees
# ---------------------------------------------------------------------------


class CompanyRef(_Payload):
    id: Optional[str] = None
    name: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_to_str(cls, value):
        return _to_str(value)


class TraineePayload(_Payload):
    """One record of the `trainees` query."""

    id: Optional[str] = None
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[CompanyRef] = None

    @field_validator("id", "phone", mode="before")
    @classmethod
    def coerce_to_str(cls, value):
        return _to_str(value)


# ---------------------------------------------------------------------------
# Quotes and invoices
# ---------------------------------------------------------------------------


class LineItem(_Payload):
    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[float] = None
    unit_price: Optional[float] = Field(default=None, alias="unitPrice")
    vat: Optional[float] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_to_str(cls, value):
        return _to_str(value)

    def total(self) -> Decimal:
        """quantity × unit price × (1 + vat%)."""
        quantity = Decimal(str(self.quantity or 0))
        unit_price = Decimal(str(self.unit_price or 0))
        vat = Decimal(str(self.vat or 0))
        return quantity * unit_price * (1 + vat / 100)


class CustomerEntity(_Payload):
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    accounting_number: Optional[str] = Field(default=None, alias="accountingNumber")

    @field_validator("id", "accounting_number", mode="before")
    @classmethod
    def coerce_to_str(cls, value):
        return _to_str(value)


class Customer(_Payload):
    id: Optional[str] = None
    accounting_number: Optional[str] = Field(default=None, alias="accountingNumber")
    entity: Optional[CustomerEntity] = None

    @field_validator("id", "accounting_number", mode="before")
    @classmethod
    def coerce_to_str(cls, value):
        return _to_str(value)


class InvoicePayment(_Payload):
    amount: Optional[float] = None
    date: Optional[str] = None


class _BillingDocument(_Payload):
    id: Optional[str] = None
    number: Optional[str] = None
    number_str: Optional[str] = Field(default=None, alias="numberStr")
    date: Optional[str] = None
    inserted_at: Optional[str] = Field(default=None, alias="insertedAt")
    items: List[LineItem] = Field(default_factory=list)
    customer: Optional[Customer] = None

    @field_validator("id", "number", mode="before")
    @classmethod
    def coerce_to_str(cls, value):
        return _to_str(value)

    @field_validator("items", mode="before")
    @classmethod
    def none_to_list(cls, value):
        return value or []

    @property
    def company_digiforma_id(self) -> Optional[str]:
        """Digiforma id of the company this document was issued to."""
        if self.customer and self.customer.entity:
            return self.customer.entity.id
        return None

    @property
    def display_number(self) -> Optional[str]:
        return self.number_str or self.number

    def total_amount(self) -> Decimal:
        return sum((item.total() for item in self.items), Decimal("0")).quantize(Decimal("0.01"))


class QuotePayload(_BillingDocument):
    """One record of the `quotations` query."""

    accepted_at: Optional[str] = Field(default=None, alias="acceptedAt")

    def status(self) -> str:
        return "accepted" if self.accepted_at else "sent"


class InvoicePayload(_BillingDocument):
    """One record of the `invoices` query."""

    invoice_payments: List[InvoicePayment] = Field(default_factory=list, alias="invoicePayments")

    @field_validator("invoice_payments", mode="before")
    @classmethod
    def payments_none_to_list(cls, value):
        return value or []

    def paid_amount(self) -> Decimal:
        total = sum(
            (Decimal(str(p.amount or 0)) for p in self.invoice_payments), Decimal("0")
        )
        return total.quantize(Decimal("0.01"))

    @property
    def last_payment_date(self) -> Optional[str]:
        dates = [p.date for p in self.invoice_payments if p.date]
        return max(dates) if dates else None

    def status(self) -> str:
        total = self.total_amount()
        paid = self.paid_amount()
        if total > 0 and paid >= total:
            return "paid"
        if paid > 0:
            return "partially_paid"
        return "sent"
