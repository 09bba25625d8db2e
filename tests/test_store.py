"""Tests for app/services/storage.py and app/services/numbering.py

Covers:
- amount computation and the total == subtotal + vat invariant
- legal numbering: format, sequence, write-once, retry past a taken number
- storage-boundary access rules for inserts, reads and column writes
- typed decoding of rows and quarantine of malformed ones
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import insert

from app.core.errors import AuthorizationFailed, CorruptInvoiceRecord, InvoiceNotFound, ValidationFailed
from app.core.rls import POLICY_STATEMENTS
from app.models.invoice import Invoice, InvoiceStatus
from app.schemas.invoice import InvoiceCreate, InvoiceRecord, compute_amounts
from app.services.numbering import NumberingAuthority

from conftest import CLIENT_ID, STRANGER_ID, VENDOR_ID

YEAR = datetime.now(timezone.utc).year


def new_invoice(subtotal: str = "250.00", vat_rate: str = "19") -> InvoiceCreate:
    return InvoiceCreate(
        vendor_id=VENDOR_ID,
        client_id=CLIENT_ID,
        subtotal_amount=Decimal(subtotal),
        vat_rate=Decimal(vat_rate),
    )


class TestAmounts:
    def test_scenario_thousand_at_nineteen_percent(self) -> None:
        assert compute_amounts(Decimal("1000.00"), Decimal("19")) == (
            Decimal("1000.00"), Decimal("190.00"), Decimal("1190.00"),
        )

    def test_vat_rounds_half_up_to_cents(self) -> None:
        subtotal, vat, total = compute_amounts(Decimal("10.05"), Decimal("5"))
        assert vat == Decimal("0.50")
        assert total == Decimal("10.55")

    @pytest.mark.parametrize("subtotal", ["0.01", "0.99", "13.37", "999999.99"])
    @pytest.mark.parametrize("rate", ["0", "7", "19", "21.5"])
    def test_total_is_subtotal_plus_vat(self, subtotal: str, rate: str) -> None:
        s, v, t = compute_amounts(Decimal(subtotal), Decimal(rate))
        assert abs(s + v - t) <= Decimal("0.01")

    def test_negative_subtotal_rejected(self) -> None:
        with pytest.raises(ValidationError):
            new_invoice(subtotal="-1.00")

    def test_same_vendor_and_client_rejected(self) -> None:
        with pytest.raises(ValidationError):
            InvoiceCreate(vendor_id=VENDOR_ID, client_id=VENDOR_ID, subtotal_amount=Decimal("1"))


class TestCreate:
    async def test_new_invoice_scenario(self, invoice: InvoiceRecord) -> None:
        assert invoice.status is InvoiceStatus.DRAFT
        assert invoice.subtotal_amount == Decimal("1000.00")
        assert invoice.vat_amount == Decimal("190.00")
        assert invoice.total_amount == Decimal("1190.00")
        assert invoice.legal_invoice_number == f"INV-{YEAR}-0001"
        assert invoice.invoice_number == invoice.legal_invoice_number
        assert invoice.issued_at is not None
        assert invoice.tax_point is not None
        assert invoice.vendor_signed_at is None

    async def test_numbers_are_sequential_and_unique(self, session, store, parties) -> None:
        numbers = []
        for _ in range(5):
            numbers.append((await store.create(CLIENT_ID, new_invoice())).legal_invoice_number)
            await session.commit()
        assert numbers == [f"INV-{YEAR}-{n:04d}" for n in range(1, 6)]

    async def test_client_may_create(self, session, store, parties) -> None:
        record = await store.create(CLIENT_ID, new_invoice())
        assert record.created_by == CLIENT_ID

    async def test_stranger_may_not_create(self, store, parties) -> None:
        with pytest.raises(AuthorizationFailed):
            await store.create(STRANGER_ID, new_invoice())

    async def test_vendor_must_be_a_vendor(self, store, parties) -> None:
        data = InvoiceCreate(vendor_id=STRANGER_ID, client_id=CLIENT_ID, subtotal_amount=Decimal("5"))
        with pytest.raises(ValidationFailed):
            await store.create(CLIENT_ID, data)

    async def test_default_vat_rate(self, store, parties) -> None:
        record = await store.create(
            VENDOR_ID, InvoiceCreate(vendor_id=VENDOR_ID, client_id=CLIENT_ID, subtotal_amount=Decimal("100"))
        )
        assert record.vat_rate == Decimal("19")
        assert record.total_amount == Decimal("119.00")

    async def test_taken_number_is_skipped(self, session, store, parties) -> None:
        # An imported invoice already holds the first number of the year
        await session.execute(insert(Invoice).values(
            id="imported-1",
            invoice_number=f"INV-{YEAR}-0001",
            legal_invoice_number=f"INV-{YEAR}-0001",
            vendor_id=VENDOR_ID,
            client_id=CLIENT_ID,
            created_by=VENDOR_ID,
            subtotal_amount=Decimal("1.00"),
            vat_rate=Decimal("0"),
            vat_amount=Decimal("0.00"),
            total_amount=Decimal("1.00"),
            status=InvoiceStatus.DRAFT,
            issued_at=datetime.now(timezone.utc),
            tax_point=datetime.now(timezone.utc),
        ))
        await session.commit()

        record = await store.create(VENDOR_ID, new_invoice())
        assert record.legal_invoice_number == f"INV-{YEAR}-0002"


class TestNumberingAuthority:
    async def test_assign_never_overwrites(self, session) -> None:
        stamp = datetime(2024, 6, 1, tzinfo=timezone.utc)
        invoice = Invoice(legal_invoice_number="LEGACY-7", invoice_number="ours-7", issued_at=stamp, tax_point=stamp)
        await NumberingAuthority().assign(session, invoice)
        assert invoice.legal_invoice_number == "LEGACY-7"
        assert invoice.invoice_number == "ours-7"
        assert invoice.issued_at == stamp
        assert invoice.tax_point == stamp

    async def test_copies_legal_number_into_invoice_number(self, session) -> None:
        invoice = Invoice()
        await NumberingAuthority(prefix="TST", width=6).assign(
            session, invoice, now=datetime(2030, 1, 1, tzinfo=timezone.utc)
        )
        assert invoice.legal_invoice_number == "TST-2030-000001"
        assert invoice.invoice_number == "TST-2030-000001"

    async def test_sequences_are_per_year(self, session) -> None:
        authority = NumberingAuthority()
        assert await authority.next_legal_number(session, 2030) == "INV-2030-0001"
        assert await authority.next_legal_number(session, 2031) == "INV-2031-0001"
        assert await authority.next_legal_number(session, 2030) == "INV-2030-0002"


class TestAccess:
    async def test_stranger_cannot_read(self, store, invoice) -> None:
        with pytest.raises(InvoiceNotFound):
            await store.get(invoice.id, STRANGER_ID)

    async def test_parties_can_read(self, store, invoice) -> None:
        assert (await store.get(invoice.id, VENDOR_ID)).id == invoice.id
        assert (await store.get(invoice.id, CLIENT_ID)).id == invoice.id

    async def test_list_by_role(self, store, invoice) -> None:
        assert [r.id for r in await store.list_for(VENDOR_ID, "vendor")] == [invoice.id]
        assert [r.id for r in await store.list_for(CLIENT_ID, "client")] == [invoice.id]
        assert await store.list_for(CLIENT_ID, "vendor") == []

    async def test_client_cannot_write_vendor_signature(self, store, invoice) -> None:
        with pytest.raises(AuthorizationFailed):
            await store.update_fields(
                invoice.id, CLIENT_ID,
                {"vendor_signed_at": datetime.now(timezone.utc), "vendor_signature_url": "forged"},
            )

    async def test_vendor_cannot_write_client_signature(self, store, invoice) -> None:
        with pytest.raises(AuthorizationFailed):
            await store.update_fields(
                invoice.id, VENDOR_ID,
                {"client_signed_at": datetime.now(timezone.utc), "client_signature_url": "forged"},
            )

    async def test_legal_number_is_immutable(self, store, invoice) -> None:
        with pytest.raises(AuthorizationFailed):
            await store.update_fields(invoice.id, VENDOR_ID, {"legal_invoice_number": "INV-0000-9999"})
        with pytest.raises(AuthorizationFailed):
            await store.system_update(invoice.id, {"legal_invoice_number": "INV-0000-9999"})

    async def test_parties_cannot_write_payment_linkage(self, store, invoice) -> None:
        with pytest.raises(AuthorizationFailed):
            await store.update_fields(invoice.id, VENDOR_ID, {"stripe_hosted_invoice_url": "https://evil"})

    async def test_parties_cannot_write_status(self, session, store, invoice) -> None:
        with pytest.raises(AuthorizationFailed):
            await store.update_fields(invoice.id, CLIENT_ID, {"status": InvoiceStatus.PAID})
        with pytest.raises(AuthorizationFailed):
            await store.update_fields(invoice.id, VENDOR_ID, {"status": InvoiceStatus.SENT})
        await session.commit()
        assert (await store.get_system(invoice.id)).status is InvoiceStatus.DRAFT

    async def test_close_only_cancels_or_voids(self, session, store, invoice) -> None:
        with pytest.raises(AuthorizationFailed):
            await store.close(invoice.id, CLIENT_ID, InvoiceStatus.PAID, InvoiceStatus.DRAFT)
        with pytest.raises(InvoiceNotFound):
            await store.close(invoice.id, STRANGER_ID, InvoiceStatus.CANCELLED, InvoiceStatus.DRAFT)

        assert await store.close(invoice.id, CLIENT_ID, InvoiceStatus.CANCELLED, InvoiceStatus.DRAFT)
        assert not await store.close(invoice.id, VENDOR_ID, InvoiceStatus.CANCELLED, InvoiceStatus.DRAFT)
        await session.commit()
        assert (await store.get_system(invoice.id)).status is InvoiceStatus.CANCELLED

    async def test_compare_and_set(self, session, store, invoice) -> None:
        assert await store.system_update(
            invoice.id, {"status": InvoiceStatus.SENT}, expect={"status": InvoiceStatus.DRAFT}
        )
        assert not await store.system_update(
            invoice.id, {"status": InvoiceStatus.SENT}, expect={"status": InvoiceStatus.DRAFT}
        )
        await session.commit()
        assert (await store.get_system(invoice.id)).status is InvoiceStatus.SENT


class TestPolicies:
    def test_trigger_limits_party_status_changes(self) -> None:
        trigger = next(s for s in POLICY_STATEMENTS if "LANGUAGE plpgsql" in s)
        service_exit = trigger.index("RETURN NEW;\n      END IF;")
        status_guard = trigger.index("NEW.status IS DISTINCT FROM OLD.status")
        assert service_exit < status_guard
        assert "NEW.status::text NOT IN ('cancelled', 'voided')" in trigger


class TestDecoding:
    async def test_record_rejects_inconsistent_total(self, invoice: InvoiceRecord) -> None:
        data = invoice.model_dump()
        data["total_amount"] = Decimal("1000.00")
        with pytest.raises(ValidationError):
            InvoiceRecord(**data)

    async def test_record_rejects_half_written_signature(self, invoice: InvoiceRecord) -> None:
        data = invoice.model_dump()
        data["vendor_signed_at"] = datetime.now(timezone.utc)
        with pytest.raises(ValidationError):
            InvoiceRecord(**data)

    async def test_malformed_rows_are_quarantined(self, session, store, invoice) -> None:
        await session.execute(insert(Invoice).values(
            id="broken-1",
            invoice_number="X-1",
            legal_invoice_number="X-1",
            vendor_id=VENDOR_ID,
            client_id=CLIENT_ID,
            created_by=VENDOR_ID,
            subtotal_amount=Decimal("100.00"),
            vat_rate=Decimal("19"),
            vat_amount=Decimal("19.00"),
            total_amount=Decimal("500.00"),
            status=InvoiceStatus.DRAFT,
            issued_at=datetime.now(timezone.utc),
            tax_point=datetime.now(timezone.utc),
        ))
        await session.commit()

        assert [r.id for r in await store.list_for(VENDOR_ID, "vendor")] == [invoice.id]
        with pytest.raises(CorruptInvoiceRecord):
            await store.get("broken-1", VENDOR_ID)
