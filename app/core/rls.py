# ============================================================================
# core/rls.py - Row-level security for the invoices table (PostgreSQL only)
# ============================================================================
"""
Policies are keyed on two session settings set per transaction:

* ``app.user_id`` - the authenticated party issuing the statement
* ``app.role``    - ``service`` for webhook / payment writes, unset otherwise

``current_setting(name, true)`` yields NULL when a setting is missing, so a
session that never called ``set_actor`` sees no rows at all.
"""

from typing import List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

_ACTOR = "current_setting('app.user_id', true)"
_SERVICE = "current_setting('app.role', true) = 'service'"

POLICY_STATEMENTS: List[str] = [
    "ALTER TABLE invoices ENABLE ROW LEVEL SECURITY",
    "ALTER TABLE invoices FORCE ROW LEVEL SECURITY",
    "DROP POLICY IF EXISTS invoices_insert_party ON invoices",
    "DROP POLICY IF EXISTS invoices_select_party ON invoices",
    "DROP POLICY IF EXISTS invoices_update_party ON invoices",
    f"CREATE POLICY invoices_insert_party ON invoices FOR INSERT "
    f"WITH CHECK ({_ACTOR} = vendor_id OR {_ACTOR} = client_id OR {_SERVICE})",
    f"CREATE POLICY invoices_select_party ON invoices FOR SELECT "
    f"USING ({_ACTOR} = vendor_id OR {_ACTOR} = client_id OR {_SERVICE})",
    f"CREATE POLICY invoices_update_party ON invoices FOR UPDATE "
    f"USING ({_ACTOR} = vendor_id OR {_ACTOR} = client_id OR {_SERVICE})",
    f"""
    CREATE OR REPLACE FUNCTION guard_invoice_columns() RETURNS trigger
    LANGUAGE plpgsql AS $$
    BEGIN
      IF OLD.legal_invoice_number IS NOT NULL
         AND NEW.legal_invoice_number IS DISTINCT FROM OLD.legal_invoice_number THEN
        RAISE EXCEPTION 'legal_invoice_number is immutable';
      END IF;
      IF NEW.vendor_id IS DISTINCT FROM OLD.vendor_id
         OR NEW.client_id IS DISTINCT FROM OLD.client_id
         OR NEW.created_at IS DISTINCT FROM OLD.created_at THEN
        RAISE EXCEPTION 'invoice parties and creation time are immutable';
      END IF;
      IF {_SERVICE} THEN
        RETURN NEW;
      END IF;
      IF NEW.status IS DISTINCT FROM OLD.status
         AND NEW.status::text NOT IN ('cancelled', 'voided') THEN
        RAISE EXCEPTION 'status is changed by the payment service only';
      END IF;
      IF (NEW.vendor_signed_at IS DISTINCT FROM OLD.vendor_signed_at
          OR NEW.vendor_signature_url IS DISTINCT FROM OLD.vendor_signature_url)
         AND {_ACTOR} IS DISTINCT FROM OLD.vendor_id THEN
        RAISE EXCEPTION 'only the vendor may sign as vendor';
      END IF;
      IF (NEW.client_signed_at IS DISTINCT FROM OLD.client_signed_at
          OR NEW.client_signature_url IS DISTINCT FROM OLD.client_signature_url)
         AND {_ACTOR} IS DISTINCT FROM OLD.client_id THEN
        RAISE EXCEPTION 'only the client may sign as client';
      END IF;
      IF NEW.stripe_hosted_invoice_url IS DISTINCT FROM OLD.stripe_hosted_invoice_url
         OR NEW.stripe_pdf_url IS DISTINCT FROM OLD.stripe_pdf_url
         OR NEW.stripe_invoice_id IS DISTINCT FROM OLD.stripe_invoice_id THEN
        RAISE EXCEPTION 'payment linkage is written by the payment service only';
      END IF;
      RETURN NEW;
    END;
    $$
    """,
    "DROP TRIGGER IF EXISTS invoices_guard_columns ON invoices",
    "CREATE TRIGGER invoices_guard_columns BEFORE UPDATE ON invoices "
    "FOR EACH ROW EXECUTE FUNCTION guard_invoice_columns()",
]


async def install_policies(conn: AsyncConnection):
    for statement in POLICY_STATEMENTS:
        await conn.execute(text(statement))


async def set_actor(session: AsyncSession, user_id: str):
    """Scope the current transaction to ``user_id``. No-op outside PostgreSQL."""
    if session.bind.dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT set_config('app.user_id', :user_id, true), set_config('app.role', '', true)"),
        {"user_id": user_id},
    )


async def set_service_role(session: AsyncSession):
    """Mark the current transaction as a payment-service write."""
    if session.bind.dialect.name != "postgresql":
        return
    await session.execute(text("SELECT set_config('app.role', 'service', true)"))
