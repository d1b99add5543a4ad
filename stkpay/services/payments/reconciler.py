"""
Callback reconciler: applies a gateway callback to its PaymentIntent exactly once.

The terminal transition is a single UPDATE .. WHERE status='PENDING'; only the
delivery that wins it triggers the entitlement grant. Every outcome except an
unreadable body is acknowledged to Daraja so it stops re-delivering.
"""
import hmac
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stkpay.core.config import GatewayConfig
from stkpay.models.payment_intent import IntentStatus
from stkpay.services.entitlements.service import EntitlementGrantor, GrantResult
from stkpay.services.mpesa.utils import mask_msisdn, normalize_msisdn
from stkpay.services.payments.callback import parse_stk_callback
from stkpay.services.payments.errors import CallbackPayloadError
from stkpay.services.payments.store import IntentStore
from stkpay.services.payments.telemetry import PaymentTelemetry, SideEffectResult

logger = logging.getLogger(__name__)

DARAJA_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def build_ack(**fields: Any) -> dict:
    return {**DARAJA_ACK, "ok": True, **fields}


@dataclass
class ReconcileResult:
    outcome: str  # paid, failed, duplicate, not_found, error
    ack: dict
    intent_id: str | None = None
    grant: GrantResult | None = None


class CallbackReconciler:
    def __init__(
        self,
        db: Session,
        config: GatewayConfig,
        grantor: EntitlementGrantor | None = None,
        telemetry: PaymentTelemetry | None = None,
    ) -> None:
        self.db = db
        self.config = config
        self.store = IntentStore(db)
        self.telemetry = telemetry or PaymentTelemetry(db)
        self.grantor = grantor or EntitlementGrantor(db, telemetry=self.telemetry)

    def verify_token(self, presented: str | None) -> bool:
        """True when no callback token is configured or the presented one matches."""
        expected = self.config.callback_token
        if not expected:
            return True
        return hmac.compare_digest((presented or "").encode("utf-8"), expected.encode("utf-8"))

    def reconcile(self, payload: Any, source: str = "callback") -> ReconcileResult:
        try:
            cb = parse_stk_callback(payload)
        except CallbackPayloadError as e:
            self.telemetry.callback("malformed")
            logger.warning("payment_callback_malformed", extra={"error": str(e)})
            raise

        log_ctx = {
            "checkout_request_id": cb.checkout_request_id,
            "merchant_request_id": cb.merchant_request_id,
            "result_code": cb.result_code,
        }
        try:
            intent = self.store.find_by_correlation(cb.checkout_request_id, cb.merchant_request_id)
            if intent is None:
                self.telemetry.callback("not_found")
                logger.warning("payment_callback_intent_not_found", extra=log_ctx)
                return ReconcileResult("not_found", build_ack(note="not found"))

            intent_id = intent.id
            expected_amount = intent.amount
            if intent.is_terminal:
                self.telemetry.callback("duplicate")
                logger.info("payment_callback_duplicate", extra={**log_ctx, "intent_id": intent_id})
                return ReconcileResult("duplicate", build_ack(idempotent=True), intent_id)

            phone = normalize_msisdn(cb.phone)[:15] if cb.phone else None
            try:
                won = self.store.complete(
                    intent_id,
                    paid=cb.succeeded,
                    result_code=cb.result_code,
                    result_desc=cb.result_desc,
                    raw_callback=payload,
                    mpesa_receipt=cb.receipt if cb.succeeded else None,
                    payer_phone_confirmed=phone,
                    transaction_date=cb.transaction_date,
                    paid_at=cb.transaction_date,
                )
            except IntegrityError as e:
                # mpesa_receipt is unique; the intent stays PENDING for review
                self.db.rollback()
                self.telemetry.callback("error")
                self.telemetry.side_effect(
                    SideEffectResult(
                        effect="intent_complete",
                        ok=False,
                        intent_id=intent_id,
                        error=str(e.orig or e),
                        details={"mpesa_receipt": cb.receipt, "checkout_request_id": cb.checkout_request_id},
                    )
                )
                return ReconcileResult("error", build_ack(note="handled with error"), intent_id)
            if not won:
                # another delivery committed the transition first
                self.telemetry.callback("duplicate")
                logger.info("payment_callback_lost_race", extra={**log_ctx, "intent_id": intent_id})
                return ReconcileResult("duplicate", build_ack(idempotent=True), intent_id)

            status = IntentStatus.PAID if cb.succeeded else IntentStatus.FAILED
            self.telemetry.intent_terminal(intent_id, status.value, source)
            self.telemetry.callback(status.value.lower())
            logger.info(
                "payment_callback_applied",
                extra={**log_ctx, "intent_id": intent_id, "outcome": status.value, "msisdn": mask_msisdn(phone)},
            )
            if cb.result_code is None:
                self.telemetry.result_code_unreadable(intent_id, cb.raw_result_code)

            if not cb.succeeded:
                return ReconcileResult("failed", build_ack(status=status.value), intent_id)

            if cb.amount is not None and cb.amount != expected_amount:
                self.telemetry.amount_mismatch(intent_id, expected_amount, cb.amount)

            grant = self.grantor.grant_for_intent(self.store.get(intent_id))
            return ReconcileResult("paid", build_ack(status=status.value), intent_id, grant)
        except Exception as e:
            self.db.rollback()
            self.telemetry.callback("error")
            logger.exception("payment_callback_error", extra={**log_ctx, "error": str(e)})
            return ReconcileResult("error", build_ack(note="handled with error"))
