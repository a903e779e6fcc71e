"""SQLAlchemy 2.0 ORM models for the CRM Digiforma sync engine.

Covers 9 tables:
  - CRM entities mutated by the sync engine: institutions, contacts
  - Digiforma shadow copies: digiforma_companies, digiforma_contacts,
    digiforma_quotes, digiforma_invoices
  - Sync bookkeeping: digiforma_institution_mappings, digiforma_syncs,
    digiforma_settings

Timestamps are filled on the Python side so rows can be read back inside an
async session without a refresh round-trip.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    UUID,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Shared base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Value sets used in CHECK constraints
# ---------------------------------------------------------------------------


class DataSource:
    """Where a CRM record was first created. Never changes afterwards."""

    CRM = "crm"
    DIGIFORMA = "digiforma"
    SAGE = "sage"
    IMPORT = "import"

    ALL = (CRM, DIGIFORMA, SAGE, IMPORT)


class MatchType:
    """How a company ↔ institution mapping was established."""

    AUTO = "auto"
    FUZZY = "fuzzy"
    MANUAL = "manual"

    ALL = (AUTO, FUZZY, MANUAL)


class SyncStatus:
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"

    ALL = (PENDING, IN_PROGRESS, SUCCESS, PARTIAL, ERROR)


class SyncType:
    MANUAL = "manual"
    SCHEDULED = "scheduled"

    ALL = (MANUAL, SCHEDULED)


class SyncMode:
    """initial: privileged backfill that may edit unlocked records.
    normal: only creates records that do not exist yet."""

    INITIAL = "initial"
    NORMAL = "normal"

    ALL = (INITIAL, NORMAL)


class WriteOrigin:
    """Who is writing an Institution or Contact.

    USER writes lock the record against later sync edits; SYNC writes leave
    the lock as it is.
    """

    SYNC = "sync"
    USER = "user"


def _in_check(column: str, values: tuple) -> str:
    return f"{column} IN (" + ", ".join(f"'{v}'" for v in values) + ")"


_QUOTE_STATUSES = ("draft", "sent", "accepted", "rejected", "expired", "converted")
_INVOICE_STATUSES = ("draft", "sent", "paid", "partially_paid", "overdue", "cancelled")


# ===========================================================================
# CRM entities
# ===========================================================================


class Institution(Base):
    """institutions — medical institution (CRM-owned, sync may enrich it)."""

    __tablename__ = "institutions"
    __table_args__ = (
        CheckConstraint(_in_check("data_source", DataSource.ALL), name="ck_institution_data_source"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    type: Mapped[str] = mapped_column(Text, nullable=False, default="clinic")
    address: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    accounting_number: Mapped[Optional[str]] = mapped_column(Text, unique=True, nullable=True)
    siret: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    digiforma_id: Mapped[Optional[str]] = mapped_column(Text, unique=True, nullable=True)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Multi-source tracking
    data_source: Mapped[str] = mapped_column(Text, nullable=False, default=DataSource.CRM)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    last_sync_at: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class Contact(Base):
    """contacts — people working at an institution."""

    __tablename__ = "contacts"
    __table_args__ = (
        CheckConstraint(_in_check("data_source", DataSource.ALL), name="ck_contact_data_source"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    institution_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("institutions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    first_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    last_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    data_source: Mapped[str] = mapped_column(Text, nullable=False, default=DataSource.CRM)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    external_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    last_sync_at: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


# ===========================================================================
# Digiforma shadow copies
# ===========================================================================


class DigiformaCompany(Base):
    """digiforma_companies — local copy of a Digiforma company."""

    __tablename__ = "digiforma_companies"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    digiforma_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    institution_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("institutions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    address: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    siret: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    website: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # accountingNumber, ape, code, cityCode, note, employeesCount, contacts
    metadata_: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    last_sync_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class DigiformaContact(Base):
    """digiforma_contacts — local copy of a Digiforma company contact."""

    __tablename__ = "digiforma_contacts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    digiforma_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    digiforma_company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("digiforma_companies.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    contact_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("contacts.id", ondelete="SET NULL"),
        nullable=True,
    )
    first_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    last_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    role: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    last_sync_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class DigiformaQuote(Base):
    """digiforma_quotes — local copy of a Digiforma quotation."""

    __tablename__ = "digiforma_quotes"
    __table_args__ = (
        CheckConstraint(_in_check("status", _QUOTE_STATUSES), name="ck_digiforma_quote_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    digiforma_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    digiforma_company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("digiforma_companies.id", ondelete="SET NULL"),
        nullable=True,
    )
    institution_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("institutions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    quote_number: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="draft")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="EUR")
    created_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    last_sync_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class DigiformaInvoice(Base):
    """digiforma_invoices — local copy of a Digiforma invoice (training revenue)."""

    __tablename__ = "digiforma_invoices"
    __table_args__ = (
        CheckConstraint(_in_check("status", _INVOICE_STATUSES), name="ck_digiforma_invoice_status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    digiforma_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    digiforma_company_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("digiforma_companies.id", ondelete="SET NULL"),
        nullable=True,
    )
    institution_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("institutions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    invoice_number: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="draft")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="EUR")
    issue_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    last_sync_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


# ===========================================================================
# Sync bookkeeping
# ===========================================================================


class DigiformaInstitutionMapping(Base):
    """digiforma_institution_mappings — one company ↔ institution link."""

    __tablename__ = "digiforma_institution_mappings"
    __table_args__ = (
        CheckConstraint(_in_check("match_type", MatchType.ALL), name="ck_mapping_match_type"),
        CheckConstraint("match_score >= 0 AND match_score <= 100", name="ck_mapping_match_score"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    digiforma_company_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("digiforma_companies.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    institution_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("institutions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    match_type: Mapped[str] = mapped_column(Text, nullable=False, default=MatchType.MANUAL)
    match_score: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    # accountingNumber, siret, email, fuzzy_name_city, fuzzy_name_zipcode, created, manual
    match_criteria: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confirmed_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    @property
    def is_trusted(self) -> bool:
        """Fuzzy mappings only count once a human has confirmed them."""
        if self.match_type == MatchType.FUZZY:
            return self.confirmed_at is not None
        return True


class DigiformaSync(Base):
    """digiforma_syncs — one row per synchronization pass."""

    __tablename__ = "digiforma_syncs"
    __table_args__ = (
        CheckConstraint(_in_check("status", SyncStatus.ALL), name="ck_sync_status"),
        CheckConstraint(_in_check("sync_type", SyncType.ALL), name="ck_sync_type"),
        CheckConstraint(_in_check("mode", SyncMode.ALL), name="ck_sync_mode"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    sync_type: Mapped[str] = mapped_column(Text, nullable=False)
    mode: Mapped[str] = mapped_column(Text, nullable=False, default=SyncMode.NORMAL)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=SyncStatus.PENDING, index=True
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    companies_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    companies_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    companies_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    contacts_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    contacts_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    contacts_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quotes_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quotes_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quotes_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    invoices_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    invoices_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    invoices_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # [{"type": "MERGE_FAILED", "message": "...", "details": {...}}, ...]
    errors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    metadata_: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    triggered_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class DigiformaSettings(Base):
    """digiforma_settings — singleton API configuration row."""

    __tablename__ = "digiforma_settings"
    __table_args__ = (
        CheckConstraint(
            "sync_frequency IN ('daily', 'weekly', 'monthly')",
            name="ck_settings_sync_frequency",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    # Fernet-encrypted; empty string means "not configured"
    bearer_token: Mapped[str] = mapped_column(Text, nullable=False, default="")
    api_url: Mapped[str] = mapped_column(
        Text, nullable=False, default="https://app.digiforma.com/api/v1/graphql"
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    auto_sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sync_frequency: Mapped[str] = mapped_column(Text, nullable=False, default="weekly")
    last_test_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_test_success: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    last_test_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_sync_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def is_configured(self) -> bool:
        """True once a bearer token has been stored."""
        return bool(self.bearer_token)
