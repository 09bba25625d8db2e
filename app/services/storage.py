# services/storage.py - Invoice Store
# ============================================================================
"""
The only module that reads or writes ``invoices`` rows.

Access rules are enforced here as well as by the PostgreSQL policies in
``app.core.rls``: a party may only create invoices it is part of, only see
invoices it is part of, and only touch its own signature columns. Rows leave
this module as validated ``InvoiceRecord`` objects.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    AuthorizationFailed, CorruptInvoiceRecord, InvoiceNotFound, NumberingConflict, NumberingExhausted,
    ValidationFailed,
)
from app.core.rls import set_actor, set_service_role
from app.models.invoice import Invoice, InvoiceStatus
from app.models.user import User, VendorProfile, new_id
from app.schemas.invoice import InvoiceCreate, InvoiceRecord, compute_amounts
from app.services.numbering import NumberingAuthority

logger = logging.getLogger(__name__)

invoices = Invoice.__table__

IMMUTABLE_COLUMNS = frozenset({
    "id", "invoice_number", "legal_invoice_number", "vendor_id", "client_id", "created_by", "created_at",
})
VENDOR_COLUMNS = frozenset({"vendor_signed_at", "vendor_signature_url"})
CLIENT_COLUMNS = frozenset({"client_signed_at", "client_signature_url"})
PAYMENT_COLUMNS = frozenset({"stripe_invoice_id", "stripe_pdf_url", "stripe_hosted_invoice_url"})
CLOSING_STATUSES = frozenset({InvoiceStatus.CANCELLED, InvoiceStatus.VOIDED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _conditions(expect: Optional[Dict[str, Any]]):
    clauses = []
    for name, value in (expect or {}).items():
        column = invoices.c[name]
        if value is None:
            clauses.append(column.is_(None))
        elif isinstance(value, (set, frozenset, list, tuple)):
            clauses.append(column.in_(list(value)))
        else:
            clauses.append(column == value)
    return clauses


def role_of(record: InvoiceRecord, user_id: str) -> Optional[str]:
    if user_id == record.vendor_id:
        return "vendor"
    if user_id == record.client_id:
        return "client"
    return None


class InvoiceStore:
    def __init__(self, session: AsyncSession, numbering: Optional[NumberingAuthority] = None):
        self.session = session
        self.numbering = numbering or NumberingAuthority()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _fetch(self, invoice_id: str) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def decode(row: Invoice) -> InvoiceRecord:
        try:
            return InvoiceRecord.model_validate(row)
        except ValidationError as exc:
            logger.error("Invoice %s failed shape validation: %s", row.id, exc)
            raise CorruptInvoiceRecord(
                "Invoice record is malformed", {"invoice_id": row.id}
            ) from exc

    async def get(self, invoice_id: str, actor_id: str) -> InvoiceRecord:
        await set_actor(self.session, actor_id)
        row = await self._fetch(invoice_id)
        if row is None or actor_id not in (row.vendor_id, row.client_id):
            # Strangers get the same answer as a missing row
            raise InvoiceNotFound(invoice_id)
        return self.decode(row)

    async def get_system(self, invoice_id: str) -> InvoiceRecord:
        await set_service_role(self.session)
        row = await self._fetch(invoice_id)
        if row is None:
            raise InvoiceNotFound(invoice_id)
        return self.decode(row)

    async def find_by_stripe_invoice(self, stripe_invoice_id: str) -> Optional[InvoiceRecord]:
        await set_service_role(self.session)
        result = await self.session.execute(
            select(Invoice.id).where(Invoice.stripe_invoice_id == stripe_invoice_id)
        )
        invoice_id = result.scalar_one_or_none()
        return await self.get_system(invoice_id) if invoice_id else None

    async def list_for(self, actor_id: str, role: str, skip: int = 0, limit: int = 50) -> List[InvoiceRecord]:
        await set_actor(self.session, actor_id)
        column = Invoice.vendor_id if role == "vendor" else Invoice.client_id
        result = await self.session.execute(
            select(Invoice)
            .where(column == actor_id)
            .order_by(Invoice.created_at.desc())
            .offset(skip)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        records = []
        for row in result.scalars().all():
            try:
                records.append(InvoiceRecord.model_validate(row))
            except ValidationError as exc:
                logger.warning("Quarantined malformed invoice %s: %s", row.id, exc)
        return records

    async def vendor_profile(self, vendor_id: str) -> Optional[VendorProfile]:
        result = await self.session.execute(
            select(VendorProfile)
            .where(VendorProfile.user_id == vendor_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def user(self, user_id: str) -> Optional[User]:
        return await self.session.get(User, user_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, actor_id: str, data: InvoiceCreate) -> InvoiceRecord:
        """Insert a draft invoice with its legal number. The caller commits."""
        if actor_id not in (data.vendor_id, data.client_id):
            raise AuthorizationFailed("Invoices can only be created by their vendor or client")
        vendor = await self.user(data.vendor_id)
        client = await self.user(data.client_id)
        if vendor is None or vendor.role != "vendor":
            raise ValidationFailed("Unknown vendor", {"vendor_id": data.vendor_id})
        if client is None:
            raise ValidationFailed("Unknown client", {"client_id": data.client_id})

        vat_rate = data.vat_rate if data.vat_rate is not None else settings.DEFAULT_VAT_RATE
        subtotal, vat, total = compute_amounts(data.subtotal_amount, vat_rate)

        await set_actor(self.session, actor_id)
        for attempt in range(1, settings.NUMBERING_MAX_RETRIES + 1):
            invoice = Invoice(
                id=new_id(),
                vendor_id=data.vendor_id,
                client_id=data.client_id,
                created_by=actor_id,
                description=data.description,
                subtotal_amount=subtotal,
                vat_rate=vat_rate,
                vat_amount=vat,
                total_amount=total,
                status=InvoiceStatus.DRAFT,
            )
            # The counter bump stays outside the savepoint so a retry moves past a taken number
            await self.numbering.assign(self.session, invoice)
            try:
                await self._insert(invoice)
            except NumberingConflict:
                logger.warning(
                    "Legal number %s already taken (attempt %s), drawing another",
                    invoice.legal_invoice_number, attempt,
                )
                continue
            logger.info("Created invoice %s (%s) by %s", invoice.id, invoice.legal_invoice_number, actor_id)
            return self.decode(await self._fetch(invoice.id))
        raise NumberingExhausted("Could not allocate a legal invoice number, please retry")

    async def _insert(self, invoice: Invoice) -> None:
        try:
            async with self.session.begin_nested():
                self.session.add(invoice)
                await self.session.flush()
        except IntegrityError as exc:
            if "legal_invoice_number" not in str(exc.orig):
                raise
            raise NumberingConflict(invoice.legal_invoice_number) from exc

    async def update_fields(
        self,
        invoice_id: str,
        actor_id: str,
        values: Dict[str, Any],
        expect: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Party write. Returns False when ``expect`` no longer matches the row."""
        current = await self.get(invoice_id, actor_id)
        columns = set(values)
        if columns & IMMUTABLE_COLUMNS:
            raise AuthorizationFailed(f"Columns {sorted(columns & IMMUTABLE_COLUMNS)} are immutable")
        if columns & PAYMENT_COLUMNS:
            raise AuthorizationFailed("Payment linkage is written by the payment service only")
        if "status" in columns:
            raise AuthorizationFailed("Status changes go through the invoice lifecycle")
        if columns & VENDOR_COLUMNS and actor_id != current.vendor_id:
            raise AuthorizationFailed("Only the vendor may change vendor signature fields")
        if columns & CLIENT_COLUMNS and actor_id != current.client_id:
            raise AuthorizationFailed("Only the client may change client signature fields")
        return await self._write(invoice_id, values, expect)

    async def close(
        self,
        invoice_id: str,
        actor_id: str,
        target: InvoiceStatus,
        expect_status: InvoiceStatus,
    ) -> bool:
        """Party cancel or void, the only status write a party may make."""
        await self.get(invoice_id, actor_id)
        if target not in CLOSING_STATUSES:
            raise AuthorizationFailed(f"Parties cannot move an invoice to '{target.value}'")
        return await self._write(invoice_id, {"status": target}, {"status": expect_status})

    async def system_update(
        self,
        invoice_id: str,
        values: Dict[str, Any],
        expect: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Payment-service write (hosted session linkage, webhook status)."""
        columns = set(values)
        if columns & (IMMUTABLE_COLUMNS | VENDOR_COLUMNS | CLIENT_COLUMNS):
            raise AuthorizationFailed("Service writes may not touch party or identity columns")
        await set_service_role(self.session)
        return await self._write(invoice_id, values, expect)

    async def _write(self, invoice_id: str, values: Dict[str, Any], expect: Optional[Dict[str, Any]]) -> bool:
        result = await self.session.execute(
            update(invoices)
            .where(invoices.c.id == invoice_id, *_conditions(expect))
            .values(**values, updated_at=_utcnow())
        )
        return result.rowcount == 1
