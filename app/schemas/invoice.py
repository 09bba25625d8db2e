# schemas/invoice.py - Invoice Schemas
# ============================================================================

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List, Literal, Tuple
from app.models.invoice import InvoiceStatus

CENT = Decimal("0.01")
TOTAL_TOLERANCE = Decimal("0.01")

Role = Literal["vendor", "client"]


def compute_amounts(subtotal: Decimal, vat_rate: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """Return ``(subtotal, vat, total)`` rounded half-up to cents."""
    subtotal = Decimal(subtotal).quantize(CENT, rounding=ROUND_HALF_UP)
    vat = (subtotal * Decimal(vat_rate) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    return subtotal, vat, subtotal + vat


class InvoiceCreate(BaseModel):
    vendor_id: str
    client_id: str
    subtotal_amount: Decimal = Field(ge=0)
    vat_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)
    description: Optional[str] = None

    @model_validator(mode="after")
    def parties_differ(self):
        if self.vendor_id == self.client_id:
            raise ValueError("vendor and client must be different users")
        return self


class InvoiceRecord(BaseModel):
    """A row of ``invoices`` decoded at the storage boundary.

    Construction fails for rows whose amounts or signature pairs are
    inconsistent, so nothing downstream ever sees a half-valid invoice.
    """
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    invoice_number: str
    legal_invoice_number: str
    description: Optional[str] = None
    vendor_id: str
    client_id: str
    created_by: str
    subtotal_amount: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    status: InvoiceStatus
    vendor_signed_at: Optional[datetime] = None
    vendor_signature_url: Optional[str] = None
    client_signed_at: Optional[datetime] = None
    client_signature_url: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    stripe_pdf_url: Optional[str] = None
    stripe_hosted_invoice_url: Optional[str] = None
    created_at: datetime
    issued_at: datetime
    tax_point: datetime

    @field_validator(
        "vendor_signed_at", "client_signed_at", "created_at", "issued_at", "tax_point",
        mode="after",
    )
    @classmethod
    def as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # SQLite hands back naive timestamps
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def amounts_consistent(self):
        for name in ("subtotal_amount", "vat_amount", "total_amount"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} is negative")
        if abs(self.subtotal_amount + self.vat_amount - self.total_amount) > TOTAL_TOLERANCE:
            raise ValueError("total_amount does not equal subtotal_amount + vat_amount")
        if (self.vendor_signed_at is None) != (self.vendor_signature_url is None):
            raise ValueError("vendor signature pair is half-written")
        if (self.client_signed_at is None) != (self.client_signature_url is None):
            raise ValueError("client signature pair is half-written")
        return self

    @property
    def display_number(self) -> str:
        return self.legal_invoice_number or self.invoice_number


class InvoiceResponse(BaseModel):
    id: str
    invoice_number: str
    legal_invoice_number: str
    description: Optional[str]
    vendor_id: str
    client_id: str
    subtotal_amount: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    total_amount: Decimal
    status: InvoiceStatus
    vendor_signed_at: Optional[datetime]
    client_signed_at: Optional[datetime]
    stripe_pdf_url: Optional[str]
    created_at: datetime
    issued_at: datetime
    tax_point: datetime
    available_actions: List[str] = []

    class Config:
        from_attributes = True


class SignRequest(BaseModel):
    role: Role
    name: str


class SagaStepResponse(BaseModel):
    step: str
    status: str
    attempts: int
    last_error: Optional[str]


class SignResponse(BaseModel):
    invoice: InvoiceResponse
    steps: List[SagaStepResponse] = []


class HostedSessionResponse(BaseModel):
    invoice_id: str
    hosted_invoice_url: str
    pdf_url: Optional[str]


class PaymentUrlResponse(BaseModel):
    invoice_id: str
    hosted_invoice_url: str
