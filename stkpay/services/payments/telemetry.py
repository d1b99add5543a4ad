"""
Reporting for payment events and for secondary effects that failed without
reversing the payment state: structured log + Prometheus counter + audit row.
"""
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from stkpay.services.audit.service import AuditService
from stkpay.utils.metrics import (
    entitlement_grants_total,
    payment_amount_mismatch_total,
    payment_callbacks_total,
    payment_intents_created_total,
    payment_intents_terminal_total,
    payment_side_effect_failures_total,
)

logger = logging.getLogger(__name__)

ENTITY_TYPE = "payment_intent"


@dataclass
class SideEffectResult:
    effect: str  # duplicate_delete, entitlement_grant, intent_complete
    ok: bool
    intent_id: str | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class PaymentTelemetry:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _audit(self, action: str, entity_id: str | None, payload: dict[str, Any], actor_type: str = "system") -> None:
        try:
            AuditService(self.db).log(
                actor_type=actor_type,
                actor_id=None,
                action=action,
                entity_type=ENTITY_TYPE,
                entity_id=entity_id,
                payload=payload,
            )
        except Exception as e:
            self.db.rollback()
            payment_side_effect_failures_total.labels(effect="audit").inc()
            logger.warning(
                "payment_audit_write_failed",
                extra={"intent_id": entity_id, "operation": action, "error": str(e)},
            )

    def intent_created(self, intent_id: str, mode: str, amount: int, user_id: str | None) -> None:
        payment_intents_created_total.labels(mode=mode).inc()
        logger.info(
            "payment_intent_created",
            extra={"intent_id": intent_id, "mode": mode, "amount": amount, "user_id": user_id},
        )

    def intent_terminal(self, intent_id: str, status: str, source: str) -> None:
        payment_intents_terminal_total.labels(status=status, source=source).inc()

    def callback(self, outcome: str) -> None:
        payment_callbacks_total.labels(outcome=outcome).inc()

    def amount_mismatch(self, intent_id: str, expected: int, confirmed: int | None) -> None:
        payment_amount_mismatch_total.inc()
        logger.warning(
            "callback_amount_mismatch",
            extra={"intent_id": intent_id, "amount": expected, "confirmed_amount": confirmed},
        )
        self._audit(
            "payment_amount_mismatch",
            intent_id,
            {"expected": expected, "confirmed": confirmed},
            actor_type="gateway",
        )

    def result_code_unreadable(self, intent_id: str, raw_result_code: Any) -> None:
        logger.warning(
            "payment_callback_result_code_unreadable",
            extra={"intent_id": intent_id, "result_code": raw_result_code},
        )
        self._audit(
            "payment_result_code_unreadable",
            intent_id,
            {"raw_result_code": raw_result_code},
            actor_type="gateway",
        )

    def side_effect(self, result: SideEffectResult) -> None:
        if result.ok:
            return
        payment_side_effect_failures_total.labels(effect=result.effect).inc()
        logger.error(
            "payment_side_effect_failed",
            extra={"effect": result.effect, "intent_id": result.intent_id, "error": result.error},
        )
        self._audit(
            f"{result.effect}_failed",
            result.intent_id,
            {"error": result.error, **result.details},
        )

    def grant(self, intent_id: str | None, status: str, user_id: str | None, tier: str | None, error: str | None = None) -> None:
        entitlement_grants_total.labels(status=status).inc()
        logger.info(
            "entitlement_grant",
            extra={"intent_id": intent_id, "outcome": status, "user_id": user_id, "tier": tier, "error": error},
        )
        if status == "failed":
            self.side_effect(
                SideEffectResult(
                    effect="entitlement_grant",
                    ok=False,
                    intent_id=intent_id,
                    error=error,
                    details={"user_id": user_id, "tier": tier},
                )
            )

    def simulated(self, intent_id: str, checkout_request_id: str | None) -> None:
        logger.warning(
            "payment_simulated",
            extra={"intent_id": intent_id, "checkout_request_id": checkout_request_id},
        )
        self._audit(
            "payment_simulated",
            intent_id,
            {"checkout_request_id": checkout_request_id},
            actor_type="simulator",
        )
