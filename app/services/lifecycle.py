# services/lifecycle.py - Invoice Lifecycle State Machine
# ============================================================================
"""
Pure transition rules for invoices.

Nothing in here touches the database or a remote API: callers build an
``InvoiceView`` from a decoded record, ask this module what the next state is,
and persist the answer themselves. The API and the webhook handler share the
one transition table below.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from app.core.errors import AlreadySigned, AuthorizationFailed, InvalidTransition
from app.models.invoice import InvoiceStatus
from app.schemas.invoice import InvoiceRecord

S = InvoiceStatus

TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    S.DRAFT: frozenset({S.AWAITING_CLIENT_SIGNATURE, S.SENT, S.VOIDED, S.CANCELLED}),
    # the hosted invoice is already finalized here, so the processor can settle it
    S.AWAITING_CLIENT_SIGNATURE: frozenset({S.SENT, S.PAID, S.PAYMENT_FAILED, S.VOIDED, S.CANCELLED}),
    S.SENT: frozenset({S.PAID, S.PAYMENT_FAILED, S.VOIDED, S.CANCELLED}),
    S.PAYMENT_FAILED: frozenset({S.PAID, S.VOIDED, S.CANCELLED}),
    S.PAID: frozenset(),
    S.VOIDED: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL = frozenset(status for status, targets in TRANSITIONS.items() if not targets)
SIGNABLE = frozenset({S.DRAFT, S.AWAITING_CLIENT_SIGNATURE, S.SENT, S.PAYMENT_FAILED})
PAYABLE = frozenset({S.SENT, S.PAYMENT_FAILED})
CANCELLABLE = frozenset({S.DRAFT, S.AWAITING_CLIENT_SIGNATURE})
VOIDABLE = frozenset({S.SENT, S.PAYMENT_FAILED})


class SignatureState(str, Enum):
    UNSIGNED = "unsigned"
    VENDOR_SIGNED = "vendor_signed"
    CLIENT_SIGNED = "client_signed"
    BOTH_SIGNED = "both_signed"


@dataclass(frozen=True)
class InvoiceView:
    """The slice of an invoice the lifecycle rules look at."""
    status: InvoiceStatus
    vendor_signed_at: Optional[datetime] = None
    vendor_signature_url: Optional[str] = None
    client_signed_at: Optional[datetime] = None
    client_signature_url: Optional[str] = None
    stripe_hosted_invoice_url: Optional[str] = None
    stripe_pdf_url: Optional[str] = None

    @classmethod
    def from_record(cls, record: InvoiceRecord) -> "InvoiceView":
        return cls(
            status=record.status,
            vendor_signed_at=record.vendor_signed_at,
            vendor_signature_url=record.vendor_signature_url,
            client_signed_at=record.client_signed_at,
            client_signature_url=record.client_signature_url,
            stripe_hosted_invoice_url=record.stripe_hosted_invoice_url,
            stripe_pdf_url=record.stripe_pdf_url,
        )

    @property
    def vendor_signed(self) -> bool:
        return self.vendor_signed_at is not None

    @property
    def client_signed(self) -> bool:
        return self.client_signed_at is not None


def signature_state(view: InvoiceView) -> SignatureState:
    if view.vendor_signed and view.client_signed:
        return SignatureState.BOTH_SIGNED
    if view.vendor_signed:
        return SignatureState.VENDOR_SIGNED
    if view.client_signed:
        return SignatureState.CLIENT_SIGNED
    return SignatureState.UNSIGNED


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: InvoiceStatus, target: InvoiceStatus):
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Invoice cannot move from '{current.value}' to '{target.value}'",
            {"from": current.value, "to": target.value},
        )


def apply_signature(view: InvoiceView, role: str, signed_at: datetime, signature_ref: str) -> InvoiceView:
    """Record ``role``'s signature on ``view``. Status is left to the send saga."""
    if view.status not in SIGNABLE:
        raise InvalidTransition(
            f"A {view.status.value} invoice can no longer be signed",
            {"status": view.status.value},
        )
    if role == "vendor":
        if view.vendor_signed:
            raise AlreadySigned("Invoice has already been signed by the vendor")
        return replace(view, vendor_signed_at=signed_at, vendor_signature_url=signature_ref)
    if role == "client":
        if view.client_signed:
            raise AlreadySigned("Invoice has already been signed by the client")
        return replace(view, client_signed_at=signed_at, client_signature_url=signature_ref)
    raise AuthorizationFailed(f"Unknown signing role '{role}'")


def ready_to_send(view: InvoiceView) -> bool:
    """The send saga runs once the vendor has signed an invoice that is still open."""
    return view.vendor_signed and view.status not in TERMINAL


def status_after_session(view: InvoiceView, require_client_signature: bool) -> Optional[InvoiceStatus]:
    """Status once a hosted payment session exists, or None if nothing changes."""
    if not view.vendor_signed or view.stripe_hosted_invoice_url is None:
        return None
    if view.client_signed or not require_client_signature:
        target = S.SENT
    else:
        target = S.AWAITING_CLIENT_SIGNATURE
    if target == view.status or not can_transition(view.status, target):
        return None
    return target


def reconcile_status(current: InvoiceStatus, incoming: InvoiceStatus) -> Optional[InvoiceStatus]:
    """Forward-only webhook rule. None means the event is a no-op."""
    if incoming == current:
        return None
    if can_transition(current, incoming):
        return incoming
    return None


def closing_status(view: InvoiceView, role: str, action: str) -> InvoiceStatus:
    """Target of a party-initiated cancel or void; raises if not allowed."""
    if action == "cancel":
        if view.status not in CANCELLABLE:
            raise InvalidTransition(
                "Only draft or unsent invoices can be cancelled; void a sent invoice instead",
                {"status": view.status.value},
            )
        return S.CANCELLED
    if action == "void":
        if role != "vendor":
            raise AuthorizationFailed("Only the vendor can void an invoice")
        if view.status not in VOIDABLE:
            raise InvalidTransition(
                f"A {view.status.value} invoice cannot be voided",
                {"status": view.status.value},
            )
        return S.VOIDED
    raise InvalidTransition(f"Unknown action '{action}'")


def available_actions(view: InvoiceView, role: str) -> List[str]:
    actions: List[str] = []
    if view.status in SIGNABLE:
        if role == "vendor" and not view.vendor_signed:
            actions.append("sign")
        elif role == "client" and not view.client_signed:
            actions.append("sign")
    if role == "client" and view.status in PAYABLE:
        actions.append("pay")
    if view.stripe_pdf_url:
        actions.append("download_pdf")
    if view.status in CANCELLABLE:
        actions.append("cancel")
    if role == "vendor" and view.status in VOIDABLE:
        actions.append("void")
    return actions
