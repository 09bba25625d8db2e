# services/signature.py - Signature Workflow
# ============================================================================

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import AuthorizationFailed, PreconditionFailed, ValidationFailed
from app.models.invoice import InvoiceStatus, SagaStep
from app.schemas.invoice import InvoiceRecord
from app.services.lifecycle import InvoiceView, apply_signature, closing_status, ready_to_send
from app.services.saga import SendSaga
from app.services.storage import InvoiceStore, role_of

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignaturePolicy:
    """Whether a role must type the name we have on file to sign."""
    identity_check: bool


def default_policies() -> Dict[str, SignaturePolicy]:
    return {
        "vendor": SignaturePolicy(identity_check=settings.VENDOR_SIGNATURE_IDENTITY_CHECK),
        "client": SignaturePolicy(identity_check=settings.CLIENT_SIGNATURE_IDENTITY_CHECK),
    }


@dataclass
class SignResult:
    invoice: InvoiceRecord
    steps: List[SagaStep] = field(default_factory=list)


class SignatureWorkflow:
    def __init__(self, session: AsyncSession, saga: SendSaga, policies: Optional[Dict[str, SignaturePolicy]] = None):
        self.session = session
        self.store = InvoiceStore(session)
        self.saga = saga
        self.policies = policies or default_policies()

    async def required_name(self, record: InvoiceRecord, role: str) -> Optional[str]:
        if role == "vendor":
            profile = await self.store.vendor_profile(record.vendor_id)
            return profile.business_name if profile else None
        client = await self.store.user(record.client_id)
        return client.name if client else None

    async def sign(self, invoice_id: str, actor_id: str, role: str, provided_name: str) -> SignResult:
        """Record ``role``'s signature, then send the invoice once the vendor has signed.

        Validation and authorization failures happen before any write. Once the
        signature is committed it stays, even if the payment session or the
        email fails afterwards; ``resume`` retries just those steps.
        """
        name = (provided_name or "").strip()
        if not name:
            raise ValidationFailed("A signature name is required")

        record = await self.store.get(invoice_id, actor_id)
        if role_of(record, actor_id) != role:
            raise AuthorizationFailed(f"Only the {role} of this invoice can sign as {role}")

        policy = self.policies[role]
        if policy.identity_check:
            required = await self.required_name(record, role)
            if not required:
                raise PreconditionFailed(
                    f"No {'business' if role == 'vendor' else 'full'} name on file to sign with; "
                    "complete your profile first"
                )
            if name.casefold() != required.strip().casefold():
                raise ValidationFailed(f"Please enter exactly: {required}", {"required_name": required})

        now = datetime.now(timezone.utc)
        signature_ref = f"signature-{actor_id}-{int(now.timestamp() * 1000)}"
        signed = apply_signature(InvoiceView.from_record(record), role, now, signature_ref)

        won = await self.store.update_fields(
            invoice_id,
            actor_id,
            {f"{role}_signed_at": now, f"{role}_signature_url": signature_ref},
            expect={f"{role}_signed_at": None, "status": record.status},
        )
        if not won:
            await self.session.rollback()
            latest = await self.store.get(invoice_id, actor_id)
            # Raises AlreadySigned / InvalidTransition for the usual races
            apply_signature(InvoiceView.from_record(latest), role, now, signature_ref)
            raise PreconditionFailed("The invoice changed while signing; please retry")
        await self.session.commit()
        logger.info("Invoice %s signed by %s %s", invoice_id, role, actor_id)

        steps: List[SagaStep] = []
        if ready_to_send(signed):
            steps = await self.saga.run(invoice_id)
        return SignResult(await self.store.get(invoice_id, actor_id), steps)

    async def resume(self, invoice_id: str, actor_id: str) -> SignResult:
        """Retry whichever send steps have not completed yet."""
        record = await self.store.get(invoice_id, actor_id)
        if actor_id != record.vendor_id:
            raise AuthorizationFailed("Only the vendor can resend an invoice")
        steps = await self.saga.run(invoice_id)
        return SignResult(await self.store.get(invoice_id, actor_id), steps)


async def close_invoice(store: InvoiceStore, invoice_id: str, actor_id: str, action: str) -> InvoiceRecord:
    """Cancel (either party, before sending) or void (vendor, after sending)."""
    record = await store.get(invoice_id, actor_id)
    target: InvoiceStatus = closing_status(InvoiceView.from_record(record), role_of(record, actor_id), action)
    won = await store.close(invoice_id, actor_id, target, record.status)
    if not won:
        await store.session.rollback()
        raise PreconditionFailed("The invoice changed in the meantime; please reload and retry")
    await store.session.commit()
    logger.info("Invoice %s %s by %s", invoice_id, target.value, actor_id)
    return await store.get(invoice_id, actor_id)
