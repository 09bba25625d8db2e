# main.py - FastAPI Application Entry Point
# ============================================================================

import logging
import traceback
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, Request, Header, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Literal, Optional

from app.core.config import settings
from app.core.database import get_db, init_db
from app.core.errors import AuthorizationFailed, InvoiceError, PreconditionFailed
from app.models.user import User
from app.schemas.auth import (
    AccountStatusResponse, LoginLinkResponse, OnboardingLinkRequest, OnboardingLinkResponse, UserResponse,
)
from app.schemas.invoice import (
    HostedSessionResponse, InvoiceCreate, InvoiceRecord, InvoiceResponse, PaymentUrlResponse,
    SagaStepResponse, SignRequest, SignResponse,
)
from app.services.auth import AuthService
from app.services.connect import ConnectService
from app.services.email import EmailService, NotificationDispatcher
from app.services.lifecycle import InvoiceView, available_actions
from app.services.payment import PaymentBridge, StripeGateway
from app.services.saga import SendSaga
from app.services.signature import SignResult, SignatureWorkflow, close_invoice
from app.services.storage import InvoiceStore, role_of

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await init_db()
        logger.info("✅ Database initialized")
    except Exception as e:
        logger.error(f"❌ Database init failed: {e}")
    yield

app = FastAPI(
    title=f"{settings.APP_NAME} API",
    description="Invoice signing, Stripe Connect payment and client notification",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

@app.exception_handler(InvoiceError)
async def invoice_error_handler(request: Request, exc: InvoiceError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"{exc.error_code.value} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url}: {str(exc)}")
    logger.error(f"Full traceback: {traceback.format_exc()}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})

security = HTTPBearer()

# ============================================================================
# DEPENDENCIES
# ============================================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    auth_service = AuthService()
    user = await auth_service.get_current_user(credentials.credentials, db)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid auth")
    return user

def get_stripe_gateway() -> StripeGateway:
    return StripeGateway()

def get_email_service() -> EmailService:
    return EmailService()

def get_signature_workflow(
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    email_service: EmailService = Depends(get_email_service),
) -> SignatureWorkflow:
    saga = SendSaga(db, PaymentBridge(db, gateway), NotificationDispatcher(db, email_service))
    return SignatureWorkflow(db, saga)

def to_response(record: InvoiceRecord, user_id: str) -> InvoiceResponse:
    actions = available_actions(InvoiceView.from_record(record), role_of(record, user_id))
    return InvoiceResponse(**record.model_dump(), available_actions=actions)

def to_sign_response(result: SignResult, user_id: str) -> SignResponse:
    return SignResponse(
        invoice=to_response(result.invoice, user_id),
        steps=[
            SagaStepResponse(step=s.step, status=s.status, attempts=s.attempts, last_error=s.last_error)
            for s in result.steps
        ],
    )

# ============================================================================
# ENDPOINTS
# ============================================================================

@app.get("/health")
async def health():
    return {"status": "healthy"}

@app.get("/api/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)):
    return UserResponse.model_validate(current_user)

@app.post("/api/invoices", response_model=InvoiceResponse, status_code=201)
async def create_invoice(
    body: InvoiceCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    store = InvoiceStore(db)
    record = await store.create(current_user.id, body)
    await db.commit()
    return to_response(record, current_user.id)

@app.get("/api/invoices", response_model=List[InvoiceResponse])
async def list_invoices(
    role: Optional[Literal["vendor", "client"]] = None,
    skip: int = 0,
    limit: int = 50,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    store = InvoiceStore(db)
    records = await store.list_for(current_user.id, role or current_user.role, skip=skip, limit=limit)
    return [to_response(r, current_user.id) for r in records]

@app.get("/api/invoices/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    record = await InvoiceStore(db).get(invoice_id, current_user.id)
    return to_response(record, current_user.id)

@app.post("/api/invoices/{invoice_id}/sign", response_model=SignResponse)
async def sign_invoice(
    invoice_id: str,
    body: SignRequest,
    current_user: User = Depends(get_current_user),
    workflow: SignatureWorkflow = Depends(get_signature_workflow),
):
    result = await workflow.sign(invoice_id, current_user.id, body.role, body.name)
    return to_sign_response(result, current_user.id)

@app.post("/api/invoices/{invoice_id}/resume", response_model=SignResponse)
async def resume_invoice(
    invoice_id: str,
    current_user: User = Depends(get_current_user),
    workflow: SignatureWorkflow = Depends(get_signature_workflow),
):
    result = await workflow.resume(invoice_id, current_user.id)
    return to_sign_response(result, current_user.id)

@app.post("/api/invoices/{invoice_id}/payment-session", response_model=HostedSessionResponse)
async def create_payment_session(
    invoice_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    record = await InvoiceStore(db).get(invoice_id, current_user.id)
    if current_user.id != record.vendor_id:
        raise AuthorizationFailed("Only the vendor can create a payment session")
    if record.vendor_signed_at is None:
        raise PreconditionFailed("The vendor has to sign the invoice before it can be sent for payment")
    session = await PaymentBridge(db, gateway).create_or_get_hosted_session(invoice_id)
    return HostedSessionResponse(
        invoice_id=invoice_id, hosted_invoice_url=session.hosted_invoice_url, pdf_url=session.pdf_url
    )

@app.get("/api/invoices/{invoice_id}/payment-url", response_model=PaymentUrlResponse)
async def get_payment_url(
    invoice_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    url = await PaymentBridge(db, gateway).open_payment_page(invoice_id, current_user.id)
    return PaymentUrlResponse(invoice_id=invoice_id, hosted_invoice_url=url)

@app.post("/api/invoices/{invoice_id}/cancel", response_model=InvoiceResponse)
async def cancel_invoice(
    invoice_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    record = await close_invoice(InvoiceStore(db), invoice_id, current_user.id, "cancel")
    return to_response(record, current_user.id)

@app.post("/api/invoices/{invoice_id}/void", response_model=InvoiceResponse)
async def void_invoice(
    invoice_id: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    record = await close_invoice(InvoiceStore(db), invoice_id, current_user.id, "void")
    return to_response(record, current_user.id)

@app.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="stripe-signature"),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    payload = await request.body()
    outcome = await PaymentBridge(db, gateway).handle_webhook(payload, stripe_signature)
    return {
        "status": outcome.result,
        "invoice_id": outcome.invoice_id,
        "invoice_status": outcome.status.value if outcome.status else None,
    }

# ============================================================================
# STRIPE CONNECT
# ============================================================================

@app.post("/api/connect/account", response_model=OnboardingLinkResponse)
async def connect_account(
    body: OnboardingLinkRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    url, account_id = await ConnectService(db, gateway).create_account(
        current_user, body.refresh_url, body.return_url
    )
    return OnboardingLinkResponse(url=url, account_id=account_id)

@app.post("/api/connect/refresh-link", response_model=OnboardingLinkResponse)
async def connect_refresh_link(
    body: OnboardingLinkRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    url = await ConnectService(db, gateway).refresh_link(current_user, body.refresh_url, body.return_url)
    return OnboardingLinkResponse(url=url)

@app.get("/api/connect/status", response_model=AccountStatusResponse)
async def connect_status(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    account = await ConnectService(db, gateway).check_status(current_user)
    return AccountStatusResponse(
        charges_enabled=account.charges_enabled,
        payouts_enabled=account.payouts_enabled,
        details_submitted=account.details_submitted,
    )

@app.post("/api/connect/login-link", response_model=LoginLinkResponse)
async def connect_login_link(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    return LoginLinkResponse(url=await ConnectService(db, gateway).create_login_link(current_user))

@app.get("/")
async def root():
    return {"message": f"{settings.APP_NAME} API", "version": "1.0.0"}

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
