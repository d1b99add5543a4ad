"""
Status resolver for client polling. Read-only unless a CallbackSimulator is wired.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from stkpay.models.payment_intent import IntentStatus, PaymentIntent
from stkpay.services.payments.errors import IntentNotFoundError
from stkpay.services.payments.reconciler import CallbackReconciler
from stkpay.services.payments.simulator import CallbackSimulator, as_utc
from stkpay.services.payments.store import IntentStore

logger = logging.getLogger(__name__)

PENDING_MESSAGE = "Waiting for M-Pesa confirmation."
PROCESSING_MESSAGE = "Still processing. Check your phone or try again shortly."
SUCCESS_MESSAGE = "Payment received."
FAILED_MESSAGE = "Payment failed."


@dataclass
class StatusView:
    intent_id: str
    status: str  # PENDING, PROCESSING, SUCCESS, FAILED
    message: str
    amount: int
    account_ref: str | None = None
    mpesa_receipt: str | None = None


class StatusResolver:
    def __init__(
        self,
        db: Session,
        processing_after_seconds: int = 10,
        reconciler: CallbackReconciler | None = None,
        simulator: CallbackSimulator | None = None,
    ) -> None:
        self.db = db
        self.store = IntentStore(db)
        self.processing_after = timedelta(seconds=processing_after_seconds)
        self.reconciler = reconciler
        self.simulator = simulator

    def resolve(self, intent_id: str, caller_user_id: str | None = None, now: datetime | None = None) -> StatusView:
        intent = self.store.get(intent_id)
        if intent is None:
            raise IntentNotFoundError(intent_id)
        if intent.user_id and intent.user_id != caller_user_id:
            raise IntentNotFoundError(intent_id)

        now = now or datetime.now(timezone.utc)
        if self.simulator is not None and self.reconciler is not None and self.simulator.is_due(intent, now):
            intent = self._simulate(intent)
        return self._view(intent, now)

    def _simulate(self, intent: PaymentIntent) -> PaymentIntent:
        intent_id, checkout_id = intent.id, intent.checkout_request_id
        result = self.reconciler.reconcile(self.simulator.build_payload(intent), source="simulator")
        if result.outcome == "paid":
            self.reconciler.telemetry.simulated(intent_id, checkout_id)
        self.db.expire_all()
        return self.store.get(intent_id)

    def _view(self, intent: PaymentIntent, now: datetime) -> StatusView:
        base = {
            "intent_id": intent.id,
            "amount": intent.amount,
            "account_ref": intent.account_ref,
        }
        if intent.status == IntentStatus.PAID.value:
            return StatusView(status="SUCCESS", message=SUCCESS_MESSAGE, mpesa_receipt=intent.mpesa_receipt, **base)
        if intent.status == IntentStatus.FAILED.value:
            return StatusView(status="FAILED", message=intent.result_desc or FAILED_MESSAGE, **base)
        if now - as_utc(intent.created_at) < self.processing_after:
            return StatusView(status="PENDING", message=PENDING_MESSAGE, **base)
        return StatusView(status="PROCESSING", message=PROCESSING_MESSAGE, **base)
