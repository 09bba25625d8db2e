from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.sql import func
from app.core.database import Base

class PaymentEvent(Base):
    """A processed Stripe webhook delivery; the unique event id makes redelivery a no-op."""
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stripe_event_id = Column(String, unique=True, nullable=False)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=True, index=True)
    event_type = Column(String, nullable=False)  # invoice.paid, invoice.payment_failed
    applied_status = Column(String, nullable=True)  # None when the event changed nothing
    created_at = Column(DateTime(timezone=True), server_default=func.now())
