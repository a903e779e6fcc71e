"""Initial schema: CRM entities, Digiforma shadows, sync bookkeeping.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None

_DATA_SOURCES = "data_source IN ('crm', 'digiforma', 'sage', 'import')"


def _tracking_columns() -> list:
    return [
        sa.Column("data_source", sa.Text, nullable=False, server_default="crm"),
        sa.Column("is_locked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_reason", sa.Text, nullable=True),
        sa.Column("external_data", sa.JSON, nullable=False),
        sa.Column("last_sync_at", sa.JSON, nullable=False),
    ]


def _timestamps(updated: bool = True) -> list:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
        )
    return columns


def upgrade() -> None:
    # ─── CRM entities ────────────────────────────────────────────────────────

    op.create_table(
        "institutions",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("type", sa.Text, nullable=False, server_default="clinic"),
        sa.Column("address", sa.JSON, nullable=False),
        sa.Column("accounting_number", sa.Text, nullable=True),
        sa.Column("siret", sa.Text, nullable=True),
        sa.Column("digiforma_id", sa.Text, nullable=True),
        sa.Column("tags", sa.JSON, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_tracking_columns(),
        *_timestamps(),
        sa.UniqueConstraint("accounting_number", name="uq_institution_accounting_number"),
        sa.UniqueConstraint("digiforma_id", name="uq_institution_digiforma_id"),
        sa.CheckConstraint(_DATA_SOURCES, name="ck_institution_data_source"),
    )
    op.create_index("ix_institutions_name", "institutions", ["name"])
    op.create_index("ix_institutions_siret", "institutions", ["siret"])

    op.create_table(
        "contacts",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("institution_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("first_name", sa.Text, nullable=False, server_default=""),
        sa.Column("last_name", sa.Text, nullable=False, server_default=""),
        sa.Column("email", sa.Text, nullable=True),
        sa.Column("phone", sa.Text, nullable=True),
        sa.Column("title", sa.Text, nullable=True),
        sa.Column("is_primary", sa.Boolean, nullable=False, server_default=sa.false()),
        *_tracking_columns(),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["institution_id"], ["institutions.id"], name="fk_contact_institution", ondelete="CASCADE"
        ),
        sa.CheckConstraint(_DATA_SOURCES, name="ck_contact_data_source"),
    )
    op.create_index("ix_contacts_institution_id", "contacts", ["institution_id"])
    op.create_index("ix_contacts_email", "contacts", ["email"])

    # ─── Digiforma shadows ───────────────────────────────────────────────────

    op.create_table(
        "digiforma_companies",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("digiforma_id", sa.Text, nullable=False),
        sa.Column("institution_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("email", sa.Text, nullable=True),
        sa.Column("phone", sa.Text, nullable=True),
        sa.Column("address", sa.JSON, nullable=True),
        sa.Column("siret", sa.Text, nullable=True),
        sa.Column("website", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        *_timestamps(),
        sa.UniqueConstraint("digiforma_id", name="uq_digiforma_company_digiforma_id"),
        sa.ForeignKeyConstraint(
            ["institution_id"], ["institutions.id"], name="fk_company_institution", ondelete="SET NULL"
        ),
    )
    op.create_index("ix_digiforma_companies_institution_id", "digiforma_companies", ["institution_id"])

    op.create_table(
        "digiforma_contacts",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("digiforma_id", sa.Text, nullable=False),
        sa.Column("digiforma_company_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("contact_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("first_name", sa.Text, nullable=False, server_default=""),
        sa.Column("last_name", sa.Text, nullable=False, server_default=""),
        sa.Column("email", sa.Text, nullable=True),
        sa.Column("phone", sa.Text, nullable=True),
        sa.Column("role", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        *_timestamps(updated=False),
        sa.UniqueConstraint("digiforma_id", name="uq_digiforma_contact_digiforma_id"),
        sa.ForeignKeyConstraint(
            ["digiforma_company_id"], ["digiforma_companies.id"],
            name="fk_dfcontact_company", ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], name="fk_dfcontact_contact", ondelete="SET NULL"),
    )
    op.create_index("ix_digiforma_contacts_digiforma_company_id", "digiforma_contacts", ["digiforma_company_id"])

    op.create_table(
        "digiforma_quotes",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("digiforma_id", sa.Text, nullable=False),
        sa.Column("digiforma_company_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("institution_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("quote_number", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="draft"),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.Text, nullable=False, server_default="EUR"),
        sa.Column("created_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("digiforma_id", name="uq_digiforma_quote_digiforma_id"),
        sa.ForeignKeyConstraint(
            ["digiforma_company_id"], ["digiforma_companies.id"], name="fk_quote_company", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["institution_id"], ["institutions.id"], name="fk_quote_institution", ondelete="SET NULL"
        ),
        sa.CheckConstraint(
            "status IN ('draft', 'sent', 'accepted', 'rejected', 'expired', 'converted')",
            name="ck_digiforma_quote_status",
        ),
    )
    op.create_index("ix_digiforma_quotes_institution_id", "digiforma_quotes", ["institution_id"])

    op.create_table(
        "digiforma_invoices",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("digiforma_id", sa.Text, nullable=False),
        sa.Column("digiforma_company_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("institution_id", sa.UUID(as_uuid=True), nullable=True),
        sa.Column("invoice_number", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="draft"),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("paid_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.Text, nullable=False, server_default="EUR"),
        sa.Column("issue_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("digiforma_id", name="uq_digiforma_invoice_digiforma_id"),
        sa.ForeignKeyConstraint(
            ["digiforma_company_id"], ["digiforma_companies.id"], name="fk_invoice_company", ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(
            ["institution_id"], ["institutions.id"], name="fk_invoice_institution", ondelete="SET NULL"
        ),
        sa.CheckConstraint(
            "status IN ('draft', 'sent', 'paid', 'partially_paid', 'overdue', 'cancelled')",
            name="ck_digiforma_invoice_status",
        ),
    )
    op.create_index("ix_digiforma_invoices_institution_id", "digiforma_invoices", ["institution_id"])

    # ─── Sync bookkeeping ────────────────────────────────────────────────────

    op.create_table(
        "digiforma_institution_mappings",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("digiforma_company_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("institution_id", sa.UUID(as_uuid=True), nullable=False),
        sa.Column("match_type", sa.Text, nullable=False, server_default="manual"),
        sa.Column("match_score", sa.Integer, nullable=False, server_default="100"),
        sa.Column("match_criteria", sa.Text, nullable=True),
        sa.Column("confirmed_by", sa.Text, nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("digiforma_company_id", name="uq_mapping_company"),
        sa.ForeignKeyConstraint(
            ["digiforma_company_id"], ["digiforma_companies.id"], name="fk_mapping_company", ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(
            ["institution_id"], ["institutions.id"], name="fk_mapping_institution", ondelete="CASCADE"
        ),
        sa.CheckConstraint("match_type IN ('auto', 'fuzzy', 'manual')", name="ck_mapping_match_type"),
        sa.CheckConstraint("match_score >= 0 AND match_score <= 100", name="ck_mapping_match_score"),
    )
    op.create_index(
        "ix_digiforma_institution_mappings_institution_id",
        "digiforma_institution_mappings",
        ["institution_id"],
    )

    op.create_table(
        "digiforma_syncs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("sync_type", sa.Text, nullable=False),
        sa.Column("mode", sa.Text, nullable=False, server_default="normal"),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *[
            sa.Column(f"{entity}_{counter}", sa.Integer, nullable=False, server_default="0")
            for entity in ("companies", "contacts", "quotes", "invoices")
            for counter in ("synced", "created", "updated")
        ],
        sa.Column("errors", sa.JSON, nullable=False),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("triggered_by", sa.Text, nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'in_progress', 'success', 'partial', 'error')", name="ck_sync_status"
        ),
        sa.CheckConstraint("sync_type IN ('manual', 'scheduled')", name="ck_sync_type"),
        sa.CheckConstraint("mode IN ('initial', 'normal')", name="ck_sync_mode"),
    )
    op.create_index("ix_digiforma_syncs_status", "digiforma_syncs", ["status"])

    op.create_table(
        "digiforma_settings",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("bearer_token", sa.Text, nullable=False, server_default=""),
        sa.Column(
            "api_url", sa.Text, nullable=False,
            server_default="https://app.digiforma.com/api/v1/graphql",
        ),
        sa.Column("is_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("auto_sync_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("sync_frequency", sa.Text, nullable=False, server_default="weekly"),
        sa.Column("last_test_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_test_success", sa.Boolean, nullable=True),
        sa.Column("last_test_message", sa.Text, nullable=True),
        sa.Column("last_sync_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "sync_frequency IN ('daily', 'weekly', 'monthly')", name="ck_settings_sync_frequency"
        ),
    )


def downgrade() -> None:
    # Drop in reverse dependency order
    op.drop_table("digiforma_settings")
    op.drop_index("ix_digiforma_syncs_status", table_name="digiforma_syncs")
    op.drop_table("digiforma_syncs")
    op.drop_index(
        "ix_digiforma_institution_mappings_institution_id", table_name="digiforma_institution_mappings"
    )
    op.drop_table("digiforma_institution_mappings")
    op.drop_index("ix_digiforma_invoices_institution_id", table_name="digiforma_invoices")
    op.drop_table("digiforma_invoices")
    op.drop_index("ix_digiforma_quotes_institution_id", table_name="digiforma_quotes")
    op.drop_table("digiforma_quotes")
    op.drop_index("ix_digiforma_contacts_digiforma_company_id", table_name="digiforma_contacts")
    op.drop_table("digiforma_contacts")
    op.drop_index("ix_digiforma_companies_institution_id", table_name="digiforma_companies")
    op.drop_table("digiforma_companies")
    op.drop_index("ix_contacts_email", table_name="contacts")
    op.drop_index("ix_contacts_institution_id", table_name="contacts")
    op.drop_table("contacts")
    op.drop_index("ix_institutions_siret", table_name="institutions")
    op.drop_index("ix_institutions_name", table_name="institutions")
    op.drop_table("institutions")
