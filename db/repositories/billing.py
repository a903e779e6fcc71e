"""Quote and invoice shadow repository, plus per-institution revenue."""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Tuple
from uuid import UUID

from dateutil import parser as date_parser
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DigiformaInvoice, DigiformaQuote
from schemas.digiforma import InvoicePayload, QuotePayload

logger = logging.getLogger(__name__)


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse a Digiforma date/datetime string; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = date_parser.isoparse(value)
    except ValueError:
        logger.warning("Unparseable Digiforma date %r ignored", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def _upsert(session: AsyncSession, model, digiforma_id: str, values: dict[str, Any]):
    result = await session.execute(select(model).where(model.digiforma_id == digiforma_id))
    row = result.scalar_one_or_none()
    if row is None:
        row = model(digiforma_id=digiforma_id, **values)
        session.add(row)
        await session.flush()
        return row, True
    for key, value in values.items():
        setattr(row, key, value)
    await session.flush()
    return row, False


async def upsert_quote(
    session: AsyncSession,
    payload: QuotePayload,
    digiforma_company_id: Optional[UUID],
    institution_id: Optional[UUID],
) -> Tuple[DigiformaQuote, bool]:
    if not payload.id:
        raise ValueError("Digiforma quotation payload has no id")
    values = {
        "digiforma_company_id": digiforma_company_id,
        "institution_id": institution_id,
        "quote_number": payload.display_number,
        "status": payload.status(),
        "total_amount": payload.total_amount(),
        "currency": "EUR",
        "created_date": parse_date(payload.date or payload.inserted_at),
        "accepted_date": parse_date(payload.accepted_at),
        "metadata_": {
            "customerId": payload.customer.id if payload.customer else None,
            "items": [item.model_dump(by_alias=True, exclude_none=True) for item in payload.items],
        },
        "last_sync_at": datetime.now(timezone.utc),
    }
    return await _upsert(session, DigiformaQuote, payload.id, values)


async def upsert_invoice(
    session: AsyncSession,
    payload: InvoicePayload,
    digiforma_company_id: Optional[UUID],
    institution_id: Optional[UUID],
) -> Tuple[DigiformaInvoice, bool]:
    if not payload.id:
        raise ValueError("Digiforma invoice payload has no id")
    status = payload.status()
    values = {
        "digiforma_company_id": digiforma_company_id,
        "institution_id": institution_id,
        "invoice_number": payload.display_number,
        "status": status,
        "total_amount": payload.total_amount(),
        "paid_amount": payload.paid_amount(),
        "currency": "EUR",
        "issue_date": parse_date(payload.date or payload.inserted_at),
        "paid_date": parse_date(payload.last_payment_date) if status == "paid" else None,
        "metadata_": {
            "customerId": payload.customer.id if payload.customer else None,
            "items": [item.model_dump(by_alias=True, exclude_none=True) for item in payload.items],
            "payments": [p.model_dump(exclude_none=True) for p in payload.invoice_payments],
        },
        "last_sync_at": datetime.now(timezone.utc),
    }
    return await _upsert(session, DigiformaInvoice, payload.id, values)


async def list_quotes_by_institution(
    session: AsyncSession, institution_id: UUID
) -> list[DigiformaQuote]:
    result = await session.execute(
        select(DigiformaQuote)
        .where(DigiformaQuote.institution_id == institution_id)
        .order_by(DigiformaQuote.created_date.desc())
    )
    return list(result.scalars().all())


async def get_revenue_by_institution(session: AsyncSession, institution_id: UUID) -> dict[str, Any]:
    """Invoice totals for one institution: total, paid, unpaid and invoice count."""
    result = await session.execute(
        select(
            func.coalesce(func.sum(DigiformaInvoice.total_amount), 0),
            func.coalesce(func.sum(DigiformaInvoice.paid_amount), 0),
            func.count(DigiformaInvoice.id),
        ).where(DigiformaInvoice.institution_id == institution_id)
    )
    total, paid, invoice_count = result.one()
    total = Decimal(str(total)).quantize(Decimal("0.01"))
    paid = Decimal(str(paid)).quantize(Decimal("0.01"))
    return {
        "total": total,
        "paid": paid,
        "unpaid": total - paid,
        "invoiceCount": invoice_count,
    }
