"""Shared fixtures for the invoicing tests.

Every test gets a fresh in-memory SQLite database (via aiosqlite) with the
full schema, a vendor with a connected Stripe account, a client, and fake
Stripe / SendGrid collaborators that record what they were asked to do.
"""

from __future__ import annotations

import os

# Settings are read at import time, so configure them before importing app modules.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-for-invoicing-tests"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["FRONTEND_URL"] = "https://app.example.com"

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import jwt
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.database import init_db
from app.core.errors import NotificationFailed, ValidationFailed
from app.models.user import User, VendorProfile
from app.schemas.invoice import InvoiceCreate, InvoiceRecord
from app.services.email import EmailService, NotificationDispatcher
from app.services.payment import AccountStatus, HostedInvoice, PaymentBridge, StripeGateway
from app.services.saga import SendSaga
from app.services.signature import SignaturePolicy, SignatureWorkflow
from app.services.storage import InvoiceStore

VENDOR_ID = "vendor-0001"
CLIENT_ID = "client-0001"
STRANGER_ID = "stranger-0001"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeGateway(StripeGateway):
    """Records Stripe calls instead of making them."""

    def __init__(self, charges_enabled: bool = True, payouts_enabled: bool = True) -> None:
        self.account = AccountStatus(charges_enabled, payouts_enabled, details_submitted=True)
        self.created: List[str] = []
        self.account_checks = 0
        self.fail_with: Optional[Exception] = None
        self.lookup: Optional[HostedInvoice] = None
        self.links: List[Tuple[str, str, str]] = []
        self.accounts_created: List[str] = []

    async def retrieve_account(self, account_id: str) -> AccountStatus:
        self.account_checks += 1
        return self.account

    async def create_hosted_invoice(self, account_id, record, client_email) -> HostedInvoice:
        if self.fail_with is not None:
            raise self.fail_with
        self.created.append(record.id)
        return HostedInvoice(
            stripe_invoice_id=f"in_{len(self.created)}",
            hosted_invoice_url=f"https://invoice.stripe.com/i/{record.id}",
            pdf_url=f"https://pay.stripe.com/invoice/{record.id}/pdf",
        )

    async def retrieve_invoice(self, account_id: str, stripe_invoice_id: str) -> HostedInvoice:
        if self.lookup is None:
            return HostedInvoice(stripe_invoice_id, None, None)
        return self.lookup

    async def create_account(self, email, vendor_id, business_name) -> str:
        self.accounts_created.append(vendor_id)
        return "acct_new"

    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        self.links.append((account_id, refresh_url, return_url))
        return f"https://connect.stripe.com/setup/e/{account_id}"

    async def create_login_link(self, account_id: str) -> str:
        return f"https://connect.stripe.com/express/{account_id}"

    def construct_event(self, payload: bytes, sig_header: str) -> Dict[str, Any]:
        if sig_header != "valid":
            raise ValidationFailed("Invalid signature")
        return json.loads(payload)


class FakeEmailService(EmailService):
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str, str]] = []
        self.fail = False

    async def send(self, to_address: str, subject: str, html_body: str) -> None:
        if self.fail:
            raise NotificationFailed("Email delivery failed")
        self.sent.append((to_address, subject, html_body))


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Let SQLAlchemy own BEGIN so SAVEPOINTs behave on SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def parties(session: AsyncSession) -> VendorProfile:
    session.add_all([
        User(id=VENDOR_ID, email="vendor@example.com", name="Alice Vendor", role="vendor"),
        User(id=CLIENT_ID, email="client@example.com", name="Bob Client", role="client"),
        User(id=STRANGER_ID, email="stranger@example.com", name="Eve", role="client"),
    ])
    profile = VendorProfile(
        user_id=VENDOR_ID,
        business_name="Acme Ltd",
        email="billing@acme.example",
        stripe_connect_id="acct_123",
        stripe_onboarding_complete=True,
        stripe_charges_enabled=True,
        stripe_payouts_enabled=True,
    )
    session.add(profile)
    await session.commit()
    return profile


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def mailer() -> FakeEmailService:
    return FakeEmailService()


@pytest.fixture
def store(session: AsyncSession) -> InvoiceStore:
    return InvoiceStore(session)


def build_workflow(
    session: AsyncSession,
    gateway: FakeGateway,
    mailer: FakeEmailService,
    require_client_signature: bool = False,
    client_identity_check: bool = False,
) -> SignatureWorkflow:
    saga = SendSaga(
        session,
        PaymentBridge(session, gateway),
        NotificationDispatcher(session, mailer),
        require_client_signature=require_client_signature,
    )
    policies = {
        "vendor": SignaturePolicy(identity_check=True),
        "client": SignaturePolicy(identity_check=client_identity_check),
    }
    return SignatureWorkflow(session, saga, policies)


@pytest.fixture
def workflow(session, gateway, mailer) -> SignatureWorkflow:
    return build_workflow(session, gateway, mailer)


@pytest_asyncio.fixture
async def invoice(session: AsyncSession, store: InvoiceStore, parties) -> InvoiceRecord:
    record = await store.create(
        VENDOR_ID,
        InvoiceCreate(
            vendor_id=VENDOR_ID,
            client_id=CLIENT_ID,
            subtotal_amount=Decimal("1000.00"),
            vat_rate=Decimal("19"),
            description="Kitchen renovation",
        ),
    )
    await session.commit()
    return record


def make_token(user_id: str) -> str:
    payload = {"sub": user_id, "exp": datetime.now(timezone.utc) + timedelta(hours=1)}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def auth_headers(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}
