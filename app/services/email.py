# services/email.py - Email Service (SendGrid) and client notifications
# ============================================================================

import logging
from decimal import Decimal
from html import escape
from typing import Optional

import sendgrid
from sendgrid.helpers.mail import Mail
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from app.core.config import settings
from app.core.errors import ClientContactNotFound, NotificationFailed
from app.services.storage import InvoiceStore

logger = logging.getLogger(__name__)

DEFAULT_VENDOR_NAME = "Your Vendor"


def format_eur(amount: Decimal) -> str:
    return f"€{Decimal(amount):,.2f}"


class EmailService:
    def __init__(self, client: Optional[sendgrid.SendGridAPIClient] = None):
        self.sg = client or sendgrid.SendGridAPIClient(api_key=settings.SENDGRID_API_KEY)

    async def send(self, to_address: str, subject: str, html_body: str):
        message = Mail(
            from_email=settings.FROM_EMAIL,
            to_emails=to_address,
            subject=subject,
            html_content=html_body,
        )
        try:
            response = await run_in_threadpool(self.sg.send, message)
        except Exception as e:
            logger.error("Error sending email to %s: %s", to_address, e)
            raise NotificationFailed(f"Email delivery failed: {e}") from e
        if response.status_code >= 400:
            logger.error("SendGrid rejected email to %s: %s", to_address, response.status_code)
            raise NotificationFailed(
                "Email delivery failed", {"status_code": response.status_code}
            )
        logger.info("Email '%s' sent to %s", subject, to_address)


def render_invoice_email(
    vendor_name: str,
    invoice_number: str,
    subtotal: Decimal,
    vat: Decimal,
    total: Decimal,
    pdf_url: Optional[str],
) -> str:
    vendor = escape(vendor_name)
    pdf_block = ""
    if pdf_url:
        pdf_block = f"""
                <p>You can view and download your invoice using the button below:</p>
                <a href="{escape(pdf_url, quote=True)}" style="display: inline-block; padding: 12px 30px;
                   background-color: #667eea; color: white; text-decoration: none;
                   border-radius: 6px; margin: 20px 0;">View Invoice PDF</a>
        """
    return f"""
            <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; color: #333;">
                <h2 style="color: #667eea;">New Invoice Received</h2>
                <p>Hello,</p>
                <p>You have received a new invoice from <strong>{vendor}</strong>.</p>
                <div style="background: #f9fafb; padding: 20px; border-left: 4px solid #667eea;">
                    <p><strong>Invoice Number:</strong> {escape(invoice_number)}</p>
                    <p><strong>Subtotal:</strong> {format_eur(subtotal)}</p>
                    <p><strong>VAT:</strong> {format_eur(vat)}</p>
                    <p style="font-size: 28px; font-weight: bold; color: #667eea;">{format_eur(total)}</p>
                </div>
                {pdf_block}
                <p>Please log in to your {escape(settings.APP_NAME)} dashboard to view the full invoice details and manage payment.</p>
                <p>If you have any questions about this invoice, please contact {vendor} directly.</p>
                <p><small>This is an automated email from {escape(settings.APP_NAME)}.</small></p>
            </div>
            """


class NotificationDispatcher:
    def __init__(self, session: AsyncSession, email_service: Optional[EmailService] = None):
        self.store = InvoiceStore(session)
        self.email_service = email_service or EmailService()

    async def notify_client(self, invoice_id: str):
        """Email the client that a signed invoice is waiting. Sends once per call."""
        record = await self.store.get_system(invoice_id)
        client = await self.store.user(record.client_id)
        if client is None or not client.email:
            logger.error("No contact address for client %s of invoice %s", record.client_id, invoice_id)
            raise ClientContactNotFound(invoice_id)

        profile = await self.store.vendor_profile(record.vendor_id)
        vendor_name = profile.business_name if profile and profile.business_name else DEFAULT_VENDOR_NAME
        number = record.display_number

        await self.email_service.send(
            client.email,
            f"New Invoice {number} from {vendor_name}",
            render_invoice_email(
                vendor_name, number, record.subtotal_amount, record.vat_amount,
                record.total_amount, record.stripe_pdf_url,
            ),
        )
        logger.info("Client of invoice %s notified at %s", invoice_id, client.email)
