# services/connect.py - Stripe Connect onboarding for vendors
# ============================================================================

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple
from urllib.parse import quote, urlsplit

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import PreconditionFailed
from app.models.user import User, VendorProfile
from app.services.payment import AccountStatus, StripeGateway
from app.services.storage import InvoiceStore

logger = logging.getLogger(__name__)

REFRESH_PATH = "/business-information?stripe_refresh=true"
RETURN_PATH = "/business-information?stripe_complete=true"


def ensure_https(url: Optional[str], fallback_path: str, base: Optional[str] = None) -> str:
    """Return ``url`` if it is an absolute https URL, else the configured fallback."""
    if url:
        parts = urlsplit(url.strip())
        if parts.scheme == "https" and parts.netloc:
            return url.strip()
    base = (base or settings.FRONTEND_URL).rstrip("/")
    return f"{base}{quote(fallback_path, safe='/?=&')}"


class ConnectService:
    def __init__(self, session: AsyncSession, gateway: Optional[StripeGateway] = None):
        self.session = session
        self.store = InvoiceStore(session)
        self.gateway = gateway or StripeGateway()

    async def _profile(self, vendor: User) -> VendorProfile:
        if vendor.role != "vendor":
            raise PreconditionFailed("Only vendors can connect a payout account")
        profile = await self.store.vendor_profile(vendor.id)
        if profile is None:
            raise PreconditionFailed("Complete your business information before connecting Stripe")
        return profile

    async def _connected_profile(self, vendor: User) -> VendorProfile:
        profile = await self._profile(vendor)
        if not profile.stripe_connect_id:
            raise PreconditionFailed("No Stripe account connected yet")
        return profile

    async def create_account(
        self, vendor: User, refresh_url: Optional[str] = None, return_url: Optional[str] = None
    ) -> Tuple[str, str]:
        """Create an Express account for the vendor and return ``(onboarding_url, account_id)``."""
        profile = await self._profile(vendor)
        account_id = profile.stripe_connect_id
        if not account_id:
            account_id = await self.gateway.create_account(
                profile.email or vendor.email, vendor.id, profile.business_name
            )
            profile.stripe_connect_id = account_id
            profile.stripe_onboarding_started_at = datetime.now(timezone.utc)
            await self.session.commit()
            logger.info("Created Stripe account %s for vendor %s", account_id, vendor.id)
        url = await self.gateway.create_account_link(
            account_id,
            ensure_https(refresh_url, REFRESH_PATH),
            ensure_https(return_url, RETURN_PATH),
        )
        return url, account_id

    async def refresh_link(
        self, vendor: User, refresh_url: Optional[str] = None, return_url: Optional[str] = None
    ) -> str:
        profile = await self._connected_profile(vendor)
        return await self.gateway.create_account_link(
            profile.stripe_connect_id,
            ensure_https(refresh_url, REFRESH_PATH),
            ensure_https(return_url, RETURN_PATH),
        )

    async def check_status(self, vendor: User) -> AccountStatus:
        profile = await self._connected_profile(vendor)
        status = await self.gateway.retrieve_account(profile.stripe_connect_id)
        profile.stripe_charges_enabled = status.charges_enabled
        profile.stripe_payouts_enabled = status.payouts_enabled
        profile.stripe_onboarding_complete = status.details_submitted
        profile.stripe_onboarding_completed_at = datetime.now(timezone.utc) if status.details_submitted else None
        await self.session.commit()
        logger.info(
            "Stripe account %s: charges=%s payouts=%s submitted=%s",
            profile.stripe_connect_id, status.charges_enabled, status.payouts_enabled, status.details_submitted,
        )
        return status

    async def create_login_link(self, vendor: User) -> str:
        profile = await self._connected_profile(vendor)
        return await self.gateway.create_login_link(profile.stripe_connect_id)
