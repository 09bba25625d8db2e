# services/saga.py - Send saga: payment session, then client notification
# ============================================================================
"""
Sending a signed invoice fans out to Stripe and to email. Each side effect is
a step with its own idempotency key and a row in ``invoice_saga_steps``; a
step marked completed is never repeated, so a retry after a partial failure
picks up where the last attempt stopped. A run claims a step (status
``running`` plus a bumped attempt count) before acting, so two runs racing on
the same invoice never both send the email.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import InvalidTransition, InvoiceError, PreconditionFailed
from app.models.invoice import SagaStep, SagaStepStatus
from app.services.email import NotificationDispatcher
from app.services.lifecycle import TERMINAL, InvoiceView, status_after_session
from app.services.payment import PaymentBridge
from app.services.storage import InvoiceStore

logger = logging.getLogger(__name__)

CREATE_PAYMENT_SESSION = "create_payment_session"
NOTIFY_CLIENT = "notify_client"
STEPS = (CREATE_PAYMENT_SESSION, NOTIFY_CLIENT)


def idempotency_key(invoice_id: str, step: str) -> str:
    return f"{invoice_id}:{step}"


class SendSaga:
    def __init__(
        self,
        session: AsyncSession,
        bridge: PaymentBridge,
        dispatcher: NotificationDispatcher,
        require_client_signature: Optional[bool] = None,
    ):
        self.session = session
        self.store = InvoiceStore(session)
        self.bridge = bridge
        self.dispatcher = dispatcher
        self.require_client_signature = (
            settings.REQUIRE_CLIENT_SIGNATURE if require_client_signature is None else require_client_signature
        )

    async def steps(self, invoice_id: str) -> List[SagaStep]:
        result = await self.session.execute(
            select(SagaStep)
            .where(SagaStep.invoice_id == invoice_id)
            .order_by(SagaStep.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _step(self, invoice_id: str, step: str) -> SagaStep:
        key = idempotency_key(invoice_id, step)
        result = await self.session.execute(
            select(SagaStep).where(SagaStep.idempotency_key == key).execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is not None:
            return row
        row = SagaStep(invoice_id=invoice_id, step=step, idempotency_key=key,
                       status=SagaStepStatus.PENDING.value, attempts=0)
        try:
            async with self.session.begin_nested():
                self.session.add(row)
        except IntegrityError:
            # Created by a concurrent run
            result = await self.session.execute(select(SagaStep).where(SagaStep.idempotency_key == key))
            row = result.scalar_one()
        return row

    def _lease_expired(self, row: SagaStep, now: datetime) -> bool:
        claimed = row.claimed_at
        if claimed is None:
            return True
        if claimed.tzinfo is None:
            claimed = claimed.replace(tzinfo=timezone.utc)
        return now - claimed > timedelta(seconds=settings.SAGA_STEP_LEASE_SECONDS)

    async def _claim(self, row: SagaStep) -> bool:
        """Take ``row`` for this run. False if another run holds it or got there first."""
        now = datetime.now(timezone.utc)
        if row.status == SagaStepStatus.RUNNING.value and not self._lease_expired(row, now):
            return False
        result = await self.session.execute(
            update(SagaStep)
            .where(
                SagaStep.id == row.id,
                SagaStep.attempts == row.attempts,
                SagaStep.status != SagaStepStatus.COMPLETED.value,
            )
            .values(status=SagaStepStatus.RUNNING.value, attempts=row.attempts + 1, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def _run_step(self, invoice_id: str, step: str, action: Callable[[], Awaitable[None]]) -> SagaStep:
        row = await self._step(invoice_id, step)
        if row.status == SagaStepStatus.COMPLETED.value:
            logger.debug("Saga step %s already completed", row.idempotency_key)
            return row
        claimed = await self._claim(row)
        row = await self._step(invoice_id, step)
        if not claimed:
            logger.info("Saga step %s is held by another run (%s)", row.idempotency_key, row.status)
            return row
        try:
            await action()
        except InvoiceError as exc:
            row.status = SagaStepStatus.FAILED.value
            row.last_error = exc.message
            await self.session.commit()
            logger.warning("Saga step %s failed (attempt %s): %s", row.idempotency_key, row.attempts, exc.message)
            raise
        row.status = SagaStepStatus.COMPLETED.value
        row.last_error = None
        row.completed_at = datetime.now(timezone.utc)
        await self.session.commit()
        logger.info("Saga step %s completed", row.idempotency_key)
        return row

    async def _create_session(self, invoice_id: str):
        await self.bridge.create_or_get_hosted_session(invoice_id)
        await self.advance_status(invoice_id)

    async def advance_status(self, invoice_id: str):
        """Move a signed invoice forward once its hosted session exists."""
        record = await self.store.get_system(invoice_id)
        target = status_after_session(InvoiceView.from_record(record), self.require_client_signature)
        if target is None:
            return
        if await self.store.system_update(invoice_id, {"status": target}, expect={"status": record.status}):
            logger.info("Invoice %s moved %s -> %s", invoice_id, record.status.value, target.value)
        await self.session.commit()

    async def run(self, invoice_id: str) -> List[SagaStep]:
        record = await self.store.get_system(invoice_id)
        if record.status in TERMINAL:
            raise InvalidTransition(
                f"A {record.status.value} invoice cannot be sent", {"status": record.status.value}
            )
        if record.vendor_signed_at is None:
            raise PreconditionFailed("The vendor has to sign the invoice before it can be sent")

        created = await self._run_step(invoice_id, CREATE_PAYMENT_SESSION, lambda: self._create_session(invoice_id))
        if created.status != SagaStepStatus.COMPLETED.value:
            return await self.steps(invoice_id)
        # Status may still be waiting on a late client signature even though the step is done
        await self.advance_status(invoice_id)
        await self._run_step(invoice_id, NOTIFY_CLIENT, lambda: self.dispatcher.notify_client(invoice_id))
        return await self.steps(invoice_id)
