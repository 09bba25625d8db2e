# models/user.py - User and Vendor Profile Database Models
# ============================================================================

import uuid
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    # Mirrors the auth provider's user id
    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String, unique=True, index=True, nullable=True)
    name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="client")  # vendor, client
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    vendor_profile = relationship("VendorProfile", back_populates="user", uselist=False)


class VendorProfile(Base):
    __tablename__ = "vendor_profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False)
    business_name = Column(String, nullable=False)
    email = Column(String, nullable=True)

    # Stripe Connect
    stripe_connect_id = Column(String, nullable=True, index=True)
    stripe_onboarding_complete = Column(Boolean, default=False, nullable=False)
    stripe_charges_enabled = Column(Boolean, default=False, nullable=False)
    stripe_payouts_enabled = Column(Boolean, default=False, nullable=False)
    stripe_onboarding_started_at = Column(DateTime(timezone=True), nullable=True)
    stripe_onboarding_completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="vendor_profile")
