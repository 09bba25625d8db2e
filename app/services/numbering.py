# services/numbering.py - Legal Invoice Numbering
# ============================================================================

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.invoice import Invoice, InvoiceNumberSequence

logger = logging.getLogger(__name__)

sequences = InvoiceNumberSequence.__table__


class NumberingAuthority:
    """Hands out ``PREFIX-YYYY-NNNN`` numbers from a per-year counter row.

    The counter is bumped with a single ``UPDATE ... RETURNING`` inside the
    caller's transaction, so on PostgreSQL the row lock serializes concurrent
    creators until the invoice is committed.
    """

    def __init__(self, prefix: Optional[str] = None, width: Optional[int] = None):
        self.prefix = prefix or settings.INVOICE_NUMBER_PREFIX
        self.width = width or settings.INVOICE_NUMBER_WIDTH

    async def next_legal_number(self, session: AsyncSession, year: int) -> str:
        while True:
            result = await session.execute(
                update(sequences)
                .where(sequences.c.prefix == self.prefix, sequences.c.year == year)
                .values(last_value=sequences.c.last_value + 1)
                .returning(sequences.c.last_value)
            )
            value = result.scalar_one_or_none()
            if value is not None:
                break
            # First invoice of the year
            try:
                async with session.begin_nested():
                    await session.execute(
                        insert(sequences).values(prefix=self.prefix, year=year, last_value=1)
                    )
                value = 1
                break
            except IntegrityError:
                logger.info("Sequence row for %s/%s created concurrently, retrying", self.prefix, year)
        return f"{self.prefix}-{year}-{value:0{self.width}d}"

    async def assign(self, session: AsyncSession, invoice: Invoice, now: Optional[datetime] = None) -> Invoice:
        """Fill numbering and dates on a new invoice, leaving set fields alone."""
        now = now or datetime.now(timezone.utc)
        if invoice.legal_invoice_number is None:
            invoice.legal_invoice_number = await self.next_legal_number(session, now.year)
            logger.info("Assigned legal number %s to invoice %s", invoice.legal_invoice_number, invoice.id)
        if invoice.invoice_number is None:
            invoice.invoice_number = invoice.legal_invoice_number
        if invoice.issued_at is None:
            invoice.issued_at = now
        if invoice.tax_point is None:
            invoice.tax_point = now
        return invoice
