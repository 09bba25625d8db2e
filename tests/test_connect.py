"""Tests for app/services/connect.py"""

from __future__ import annotations

import pytest

from app.core.errors import PreconditionFailed
from app.models.user import User, VendorProfile
from app.services.connect import REFRESH_PATH, RETURN_PATH, ConnectService, ensure_https
from app.services.payment import AccountStatus

from conftest import CLIENT_ID, VENDOR_ID

BASE = "https://app.example.com"


class TestEnsureHttps:
    def test_https_url_kept(self) -> None:
        assert ensure_https("https://shop.example.com/done", RETURN_PATH) == "https://shop.example.com/done"

    def test_http_url_replaced(self) -> None:
        assert ensure_https("http://localhost:3000/done", RETURN_PATH) == BASE + RETURN_PATH

    def test_missing_url_replaced(self) -> None:
        assert ensure_https(None, REFRESH_PATH) == BASE + REFRESH_PATH
        assert ensure_https("", REFRESH_PATH) == BASE + REFRESH_PATH

    def test_relative_url_replaced(self) -> None:
        assert ensure_https("/business-information", RETURN_PATH) == BASE + RETURN_PATH

    def test_explicit_base(self) -> None:
        assert ensure_https(None, RETURN_PATH, base="https://other.example.com/") == (
            "https://other.example.com" + RETURN_PATH
        )


@pytest.fixture
def connect(session, gateway) -> ConnectService:
    return ConnectService(session, gateway)


async def user(session, user_id: str) -> User:
    return await session.get(User, user_id)


class TestConnectService:
    async def test_create_account_for_new_vendor(self, session, connect, gateway, parties) -> None:
        parties.stripe_connect_id = None
        await session.commit()

        url, account_id = await connect.create_account(
            await user(session, VENDOR_ID), "http://localhost/refresh", "http://localhost/return"
        )

        assert account_id == "acct_new"
        assert url == "https://connect.stripe.com/setup/e/acct_new"
        assert gateway.accounts_created == [VENDOR_ID]
        assert gateway.links == [("acct_new", BASE + REFRESH_PATH, BASE + RETURN_PATH)]
        await session.refresh(parties)
        assert parties.stripe_connect_id == "acct_new"
        assert parties.stripe_onboarding_started_at is not None

    async def test_existing_account_is_reused(self, session, connect, gateway, parties) -> None:
        _, account_id = await connect.create_account(
            await user(session, VENDOR_ID), "https://shop.example.com/r", "https://shop.example.com/ok"
        )
        assert account_id == "acct_123"
        assert gateway.accounts_created == []
        assert gateway.links == [("acct_123", "https://shop.example.com/r", "https://shop.example.com/ok")]

    async def test_clients_cannot_connect(self, session, connect, parties) -> None:
        with pytest.raises(PreconditionFailed):
            await connect.create_account(await user(session, CLIENT_ID))

    async def test_vendor_without_profile(self, session, connect, parties) -> None:
        session.add(User(id="vendor-0002", email="solo@example.com", name="Solo", role="vendor"))
        await session.commit()
        with pytest.raises(PreconditionFailed):
            await connect.create_account(await user(session, "vendor-0002"))

    async def test_check_status_persists_flags(self, session, connect, gateway, parties) -> None:
        gateway.account = AccountStatus(charges_enabled=False, payouts_enabled=True, details_submitted=False)

        status = await connect.check_status(await user(session, VENDOR_ID))

        assert status.ready is False
        profile = await session.get(VendorProfile, parties.id, populate_existing=True)
        assert profile.stripe_charges_enabled is False
        assert profile.stripe_payouts_enabled is True
        assert profile.stripe_onboarding_complete is False
        assert profile.stripe_onboarding_completed_at is None

    async def test_refresh_link_needs_account(self, session, connect, parties) -> None:
        parties.stripe_connect_id = None
        await session.commit()
        with pytest.raises(PreconditionFailed):
            await connect.refresh_link(await user(session, VENDOR_ID))

    async def test_login_link(self, session, connect, parties) -> None:
        assert await connect.create_login_link(await user(session, VENDOR_ID)) == (
            "https://connect.stripe.com/express/acct_123"
        )
