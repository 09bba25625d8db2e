# schemas/auth.py - Authentication and Stripe Connect Schemas
# ============================================================================
from datetime import datetime
from pydantic import BaseModel
from typing import Optional

class UserResponse(BaseModel):
    id: str
    email: Optional[str]
    name: Optional[str]
    role: str
    created_at: Optional[datetime]

    class Config:
        from_attributes = True

class OnboardingLinkRequest(BaseModel):
    refresh_url: Optional[str] = None
    return_url: Optional[str] = None

class OnboardingLinkResponse(BaseModel):
    url: str
    account_id: Optional[str] = None

class AccountStatusResponse(BaseModel):
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool

class LoginLinkResponse(BaseModel):
    url: str
