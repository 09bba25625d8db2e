# services/payment.py - Stripe Connect Payment Bridge
# ============================================================================
"""
Everything that talks to Stripe on behalf of an invoice.

``StripeGateway`` is the thin, blocking SDK wrapper (run in the threadpool);
``PaymentBridge`` owns the invoice-side rules: one hosted Stripe invoice per
marketplace invoice, onboarding checks on the vendor's connected account,
the client's pay-now lookup, and webhook reconciliation.
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.errors import (
    AuthorizationFailed, InvalidTransition, InvoiceNotFound, PaymentProcessorError,
    PaymentUrlNotAvailable, ProcessorSetupRequired, ValidationFailed,
)
from app.models.invoice import InvoiceStatus
from app.models.payment import PaymentEvent
from app.schemas.invoice import InvoiceRecord
from app.services.lifecycle import PAYABLE, TERMINAL, reconcile_status
from app.services.storage import InvoiceStore

logger = logging.getLogger(__name__)

stripe.api_key = settings.STRIPE_SECRET_KEY

EVENT_STATUS = {
    "invoice.paid": InvoiceStatus.PAID,
    "invoice.payment_succeeded": InvoiceStatus.PAID,
    "invoice.payment_failed": InvoiceStatus.PAYMENT_FAILED,
}


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def describe_stripe_error(exc: Exception) -> str:
    """Turn a Stripe error into something a vendor can act on."""
    message = getattr(exc, "user_message", None) or str(exc) or "Unknown Stripe error"
    code = getattr(exc, "code", None)
    if "responsibilities of managing losses" in message or "platform-profile" in message:
        return (
            "Stripe Platform Profile Setup Required: configure the Connect platform profile at "
            "https://dashboard.stripe.com/settings/connect/platform-profile, complete the Loss "
            "Liability section and accept the Connect Platform Agreement."
        )
    if code == "api_key_expired" or "Expired API Key" in message:
        return "Stripe API key expired. Please update STRIPE_SECRET_KEY."
    return message


@dataclass(frozen=True)
class AccountStatus:
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool

    @property
    def ready(self) -> bool:
        return self.charges_enabled and self.payouts_enabled


@dataclass(frozen=True)
class HostedInvoice:
    stripe_invoice_id: str
    hosted_invoice_url: Optional[str]
    pdf_url: Optional[str]


@dataclass(frozen=True)
class HostedSession:
    hosted_invoice_url: str
    pdf_url: Optional[str]
    created: bool


@dataclass(frozen=True)
class ReconcileOutcome:
    result: str  # applied, noop, duplicate, ignored, unknown_invoice
    invoice_id: Optional[str] = None
    status: Optional[InvoiceStatus] = None


class StripeGateway:
    """Blocking Stripe SDK calls, each moved off the event loop."""

    async def _call(self, fn, *args, **kwargs):
        try:
            return await run_in_threadpool(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            logger.error("Stripe call %s failed: %s", getattr(fn, "__qualname__", fn), exc)
            raise PaymentProcessorError(describe_stripe_error(exc), {"stripe_code": exc.code}) from exc

    async def create_account(self, email: Optional[str], vendor_id: str, business_name: str) -> str:
        account = await self._call(
            stripe.Account.create,
            type="express",
            country=settings.STRIPE_CONNECT_COUNTRY,
            email=email,
            capabilities={
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            business_type="company",
            metadata={"vendor_id": vendor_id, "business_name": business_name or "Unknown"},
            idempotency_key=f"vendor-{vendor_id}-account",
        )
        return account["id"]

    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        link = await self._call(
            stripe.AccountLink.create,
            account=account_id,
            refresh_url=refresh_url,
            return_url=return_url,
            type="account_onboarding",
        )
        return link["url"]

    async def retrieve_account(self, account_id: str) -> AccountStatus:
        account = await self._call(stripe.Account.retrieve, account_id)
        return AccountStatus(
            charges_enabled=bool(account["charges_enabled"]),
            payouts_enabled=bool(account["payouts_enabled"]),
            details_submitted=bool(account["details_submitted"]),
        )

    async def create_login_link(self, account_id: str) -> str:
        link = await self._call(stripe.Account.create_login_link, account_id)
        return link["url"]

    async def create_hosted_invoice(
        self, account_id: str, record: InvoiceRecord, client_email: Optional[str]
    ) -> HostedInvoice:
        """Create and finalize a send_invoice Stripe invoice on the connected account."""
        key = f"invoice-{record.id}"
        number = record.display_number
        customer = await self._call(
            stripe.Customer.create,
            email=client_email,
            metadata={"client_id": record.client_id},
            stripe_account=account_id,
            idempotency_key=f"{key}-customer",
        )
        invoice = await self._call(
            stripe.Invoice.create,
            customer=customer["id"],
            collection_method="send_invoice",
            days_until_due=settings.INVOICE_DAYS_UNTIL_DUE,
            currency=settings.INVOICE_CURRENCY,
            auto_advance=False,
            metadata={"invoice_id": record.id, "legal_invoice_number": number},
            stripe_account=account_id,
            idempotency_key=f"{key}-invoice",
        )
        await self._call(
            stripe.InvoiceItem.create,
            customer=customer["id"],
            invoice=invoice["id"],
            amount=to_cents(record.subtotal_amount),
            currency=settings.INVOICE_CURRENCY,
            description=record.description or f"Invoice {number}",
            stripe_account=account_id,
            idempotency_key=f"{key}-subtotal",
        )
        if record.vat_amount > 0:
            await self._call(
                stripe.InvoiceItem.create,
                customer=customer["id"],
                invoice=invoice["id"],
                amount=to_cents(record.vat_amount),
                currency=settings.INVOICE_CURRENCY,
                description=f"VAT ({record.vat_rate.normalize()}%)",
                stripe_account=account_id,
                idempotency_key=f"{key}-vat",
            )
        finalized = await self._call(
            stripe.Invoice.finalize_invoice,
            invoice["id"],
            stripe_account=account_id,
            idempotency_key=f"{key}-finalize",
        )
        return HostedInvoice(
            stripe_invoice_id=finalized["id"],
            hosted_invoice_url=finalized["hosted_invoice_url"],
            pdf_url=finalized["invoice_pdf"],
        )

    async def retrieve_invoice(self, account_id: str, stripe_invoice_id: str) -> HostedInvoice:
        invoice = await self._call(stripe.Invoice.retrieve, stripe_invoice_id, stripe_account=account_id)
        return HostedInvoice(
            stripe_invoice_id=invoice["id"],
            hosted_invoice_url=invoice["hosted_invoice_url"],
            pdf_url=invoice["invoice_pdf"],
        )

    def construct_event(self, payload: bytes, sig_header: str) -> Dict[str, Any]:
        try:
            stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
        except ValueError:
            raise ValidationFailed("Invalid payload")
        except stripe.SignatureVerificationError:
            raise ValidationFailed("Invalid signature")
        return json.loads(payload)


class PaymentBridge:
    def __init__(self, session: AsyncSession, gateway: Optional[StripeGateway] = None):
        self.session = session
        self.store = InvoiceStore(session)
        self.gateway = gateway or StripeGateway()

    async def ensure_payout_ready(self, vendor_id: str, payout_account_id: Optional[str] = None) -> str:
        """Return the vendor's connected account id once it can take payments."""
        profile = await self.store.vendor_profile(vendor_id)
        account_id = payout_account_id or (profile.stripe_connect_id if profile else None)
        if not account_id:
            raise ProcessorSetupRequired(details={"vendor_id": vendor_id, "reason": "no_connected_account"})
        if profile is not None and profile.stripe_charges_enabled and profile.stripe_payouts_enabled:
            return account_id

        status = await self.gateway.retrieve_account(account_id)
        if profile is not None:
            profile.stripe_charges_enabled = status.charges_enabled
            profile.stripe_payouts_enabled = status.payouts_enabled
            profile.stripe_onboarding_complete = status.details_submitted
        if not status.ready:
            await self.session.commit()
            raise ProcessorSetupRequired(details={
                "vendor_id": vendor_id,
                "charges_enabled": status.charges_enabled,
                "payouts_enabled": status.payouts_enabled,
            })
        return account_id

    async def create_or_get_hosted_session(
        self, invoice_id: str, payout_account_id: Optional[str] = None
    ) -> HostedSession:
        record = await self.store.get_system(invoice_id)
        if record.stripe_hosted_invoice_url:
            return HostedSession(record.stripe_hosted_invoice_url, record.stripe_pdf_url, created=False)
        if record.status in TERMINAL:
            raise InvalidTransition(
                f"A {record.status.value} invoice cannot be sent for payment",
                {"status": record.status.value},
            )

        account_id = await self.ensure_payout_ready(record.vendor_id, payout_account_id)
        client = await self.store.user(record.client_id)
        hosted = await self.gateway.create_hosted_invoice(
            account_id, record, client.email if client else None
        )
        if not hosted.hosted_invoice_url:
            raise PaymentProcessorError(
                "Stripe did not return a hosted invoice URL", {"stripe_invoice_id": hosted.stripe_invoice_id}
            )

        won = await self.store.system_update(
            invoice_id,
            {
                "stripe_invoice_id": hosted.stripe_invoice_id,
                "stripe_hosted_invoice_url": hosted.hosted_invoice_url,
                "stripe_pdf_url": hosted.pdf_url,
            },
            expect={"stripe_hosted_invoice_url": None},
        )
        await self.session.commit()
        if not won:
            # A concurrent request persisted first; its session is the one of record
            stored = await self.store.get_system(invoice_id)
            logger.info("Hosted session for invoice %s already stored by another request", invoice_id)
            return HostedSession(stored.stripe_hosted_invoice_url, stored.stripe_pdf_url, created=False)
        logger.info("Hosted session %s created for invoice %s", hosted.stripe_invoice_id, invoice_id)
        return HostedSession(hosted.hosted_invoice_url, hosted.pdf_url, created=True)

    async def open_payment_page(self, invoice_id: str, actor_id: str) -> str:
        record = await self.store.get(invoice_id, actor_id)
        if actor_id != record.client_id:
            raise AuthorizationFailed("Only the client of an invoice can pay it")
        if record.status in TERMINAL:
            raise InvalidTransition(
                f"A {record.status.value} invoice cannot be paid", {"status": record.status.value}
            )
        if record.status not in PAYABLE:
            logger.info("Client %s asked to pay invoice %s while it is %s", actor_id, invoice_id, record.status.value)
            raise PaymentUrlNotAvailable(invoice_id)
        if record.stripe_hosted_invoice_url:
            return record.stripe_hosted_invoice_url

        fresh = await self.store.get_system(invoice_id)
        if fresh.stripe_hosted_invoice_url:
            return fresh.stripe_hosted_invoice_url
        if fresh.stripe_invoice_id:
            url = await self._lookup_hosted_url(fresh)
            if url:
                return url
        logger.warning("Client %s asked to pay invoice %s before a hosted URL existed", actor_id, invoice_id)
        raise PaymentUrlNotAvailable(invoice_id)

    async def _lookup_hosted_url(self, record: InvoiceRecord) -> Optional[str]:
        profile = await self.store.vendor_profile(record.vendor_id)
        if profile is None or not profile.stripe_connect_id:
            return None
        try:
            hosted = await self.gateway.retrieve_invoice(profile.stripe_connect_id, record.stripe_invoice_id)
        except PaymentProcessorError:
            logger.warning("Hosted URL lookup failed for invoice %s", record.id, exc_info=True)
            return None
        if not hosted.hosted_invoice_url:
            return None
        await self.store.system_update(
            record.id,
            {"stripe_hosted_invoice_url": hosted.hosted_invoice_url, "stripe_pdf_url": hosted.pdf_url},
            expect={"stripe_hosted_invoice_url": None},
        )
        await self.session.commit()
        return hosted.hosted_invoice_url

    async def handle_webhook(self, payload: bytes, sig_header: str) -> ReconcileOutcome:
        event = self.gateway.construct_event(payload, sig_header)
        return await self.reconcile(event)

    async def reconcile(self, event: Dict[str, Any]) -> ReconcileOutcome:
        """Apply a Stripe invoice event; safe under duplicate and out-of-order delivery."""
        event_id = event["id"]
        event_type = event["type"]
        target = EVENT_STATUS.get(event_type)
        if target is None:
            return ReconcileOutcome("ignored")

        seen = await self.session.execute(
            select(PaymentEvent.id).where(PaymentEvent.stripe_event_id == event_id)
        )
        if seen.scalar_one_or_none() is not None:
            logger.info("Stripe event %s already processed", event_id)
            return ReconcileOutcome("duplicate")

        obj = event["data"]["object"]
        invoice_id = (obj.get("metadata") or {}).get("invoice_id")
        record = None
        if invoice_id:
            try:
                record = await self.store.get_system(invoice_id)
            except InvoiceNotFound:
                record = None
        else:
            record = await self.store.find_by_stripe_invoice(obj.get("id"))
        if record is None:
            logger.warning("Stripe event %s references no known invoice", event_id)
            if not await self._record_event(event_id, event_type, None, None):
                return ReconcileOutcome("duplicate")
            return ReconcileOutcome("unknown_invoice")

        applied = None
        for _ in range(3):
            new_status = reconcile_status(record.status, target)
            if new_status is None:
                break
            if await self.store.system_update(record.id, {"status": new_status}, expect={"status": record.status}):
                applied = new_status
                break
            record = await self.store.get_system(record.id)

        if not await self._record_event(event_id, event_type, record.id, applied):
            return ReconcileOutcome("duplicate", record.id, record.status)

        if applied is None:
            logger.info("Stripe event %s left invoice %s at %s", event_id, record.id, record.status.value)
            return ReconcileOutcome("noop", record.id, record.status)
        logger.info("Invoice %s marked %s by Stripe event %s", record.id, applied.value, event_id)
        return ReconcileOutcome("applied", record.id, applied)

    async def _record_event(self, event_id: str, event_type: str, invoice_id: Optional[str],
                            applied: Optional[InvoiceStatus]) -> bool:
        """Store the delivery and commit; False if another delivery got there first."""
        try:
            async with self.session.begin_nested():
                self.session.add(PaymentEvent(
                    stripe_event_id=event_id,
                    invoice_id=invoice_id,
                    event_type=event_type,
                    applied_status=applied.value if applied else None,
                ))
        except IntegrityError:
            await self.session.commit()
            return False
        await self.session.commit()
        return True
