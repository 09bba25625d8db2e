# models/invoice.py - Invoice Database Models
# ============================================================================
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Numeric, UniqueConstraint, CheckConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.sql import func
from enum import Enum
from app.core.database import Base
from app.models.user import new_id


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    AWAITING_CLIENT_SIGNATURE = "awaiting_client_signature"
    SENT = "sent"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    VOIDED = "voided"
    CANCELLED = "cancelled"


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        CheckConstraint("subtotal_amount >= 0", name="ck_invoices_subtotal_non_negative"),
        CheckConstraint("vat_amount >= 0", name="ck_invoices_vat_non_negative"),
        CheckConstraint("total_amount >= 0", name="ck_invoices_total_non_negative"),
        CheckConstraint("vendor_id <> client_id", name="ck_invoices_distinct_parties"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    invoice_number = Column(String, nullable=True)
    legal_invoice_number = Column(String, unique=True, nullable=True)
    description = Column(Text, nullable=True)

    # Parties
    vendor_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    client_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=False)

    # Amounts (EUR)
    subtotal_amount = Column(Numeric(12, 2), nullable=False)
    vat_rate = Column(Numeric(5, 2), nullable=False)
    vat_amount = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)

    status = Column(
        SQLEnum(InvoiceStatus, name="invoice_status", values_callable=lambda e: [m.value for m in e]),
        default=InvoiceStatus.DRAFT,
        nullable=False,
        index=True,
    )

    # Signatures
    vendor_signed_at = Column(DateTime(timezone=True), nullable=True)
    vendor_signature_url = Column(String, nullable=True)
    client_signed_at = Column(DateTime(timezone=True), nullable=True)
    client_signature_url = Column(String, nullable=True)

    # Payment linkage
    stripe_invoice_id = Column(String, nullable=True)
    stripe_pdf_url = Column(String, nullable=True)
    stripe_hosted_invoice_url = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=True)
    tax_point = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class InvoiceNumberSequence(Base):
    __tablename__ = "invoice_number_sequences"

    prefix = Column(String, primary_key=True)
    year = Column(Integer, primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class SagaStepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SagaStep(Base):
    __tablename__ = "invoice_saga_steps"
    __table_args__ = (UniqueConstraint("invoice_id", "step", name="uq_saga_step_invoice"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=False, index=True)
    step = Column(String, nullable=False)  # create_payment_session, notify_client
    idempotency_key = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default=SagaStepStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)  # set when a run takes the step
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
