"""
Intent initiator: pre-create a PENDING intent, push the STK prompt, attach the
provider correlation ids and collapse any duplicate row onto the canonical one.
"""
import logging
import math
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy.orm import Session

from stkpay.core.config import Settings
from stkpay.services.entitlements.tiers import Tier, tier_price
from stkpay.services.mpesa.client import MpesaError, StkPushResponse
from stkpay.services.mpesa.utils import is_valid_msisdn, mask_msisdn, normalize_msisdn
from stkpay.services.payments.errors import GatewayError, PaymentValidationError
from stkpay.services.payments.store import IntentStore
from stkpay.services.payments.telemetry import PaymentTelemetry, SideEffectResult

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_MESSAGE = "STK push sent. Confirm on your phone."
ACCOUNT_REF_MAX = 12
DESCRIPTION_MAX = 32
DEFAULT_MAX_AMOUNT = 250_000  # Daraja per-transaction ceiling, KES


class StkGateway(Protocol):
    def stk_push(
        self, amount: int, phone: str, account_ref: str, description: str, mode: str | None = None
    ) -> StkPushResponse: ...


@dataclass
class Linkage:
    user_id: str | None = None
    product_id: str | None = None


@dataclass
class InitiationResult:
    intent_id: str
    message: str
    checkout_request_id: str
    merchant_request_id: str | None
    amount: int
    account_ref: str
    mode: str


def validate_amount(value: Any, maximum: int = DEFAULT_MAX_AMOUNT) -> int:
    """Positive integral amount no larger than `maximum`; 100.0 is accepted as 100."""
    if isinstance(value, bool):
        raise PaymentValidationError("Invalid amount")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise PaymentValidationError("Invalid amount")
        amount = int(value)
    elif isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            raise PaymentValidationError("Invalid amount") from None
        return validate_amount(parsed, maximum)
    else:
        raise PaymentValidationError("Invalid amount")
    if amount < 1:
        raise PaymentValidationError("Invalid amount")
    if amount > maximum:
        raise PaymentValidationError(f"Amount exceeds the maximum of {maximum}")
    return amount


def validate_phone(value: Any) -> str:
    msisdn = normalize_msisdn(value if isinstance(value, str) else str(value or ""))
    if not is_valid_msisdn(msisdn):
        raise PaymentValidationError("Invalid phone. Use 2547XXXXXXXX or 2541XXXXXXXX")
    return msisdn


class IntentInitiator:
    def __init__(
        self,
        db: Session,
        gateway: StkGateway,
        settings: Settings,
        telemetry: PaymentTelemetry | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self.store = IntentStore(db)
        self.telemetry = telemetry or PaymentTelemetry(db)

    def _resolve_mode(self, mode: str | None) -> str:
        if (mode or "").strip().lower() == "till":
            return "till"
        return self.settings.mpesa_mode or "paybill"

    def initiate(
        self,
        amount: Any,
        phone: Any,
        target_tier: Tier | None = None,
        linkage: Linkage | None = None,
        account_ref: str | None = None,
        description: str | None = None,
        mode: str | None = None,
    ) -> InitiationResult:
        """
        Start one STK push charge.

        Raises PaymentValidationError before anything is written, GatewayError
        (with the FAILED intent id) when the push is not accepted.
        """
        amount = validate_amount(amount, self.settings.mpesa_max_amount)
        msisdn = validate_phone(phone)
        if target_tier is not None:
            if account_ref and account_ref.strip().upper() != target_tier.value:
                raise PaymentValidationError("account_ref cannot be overridden for tier upgrades")
            account_ref = target_tier.value
        ref = (account_ref or self.settings.mpesa_default_account_ref).strip()[:ACCOUNT_REF_MAX]
        desc = (description or self.settings.mpesa_default_description).strip()[:DESCRIPTION_MAX]
        use_mode = self._resolve_mode(mode)
        linkage = linkage or Linkage()

        pending = self.store.create_pending(
            amount=amount,
            payer_phone=msisdn,
            account_ref=ref,
            description=desc,
            mode=use_mode,
            user_id=linkage.user_id,
            product_id=linkage.product_id,
        )
        pending_id = pending.id
        self.telemetry.intent_created(pending_id, use_mode, amount, linkage.user_id)

        try:
            resp = self.gateway.stk_push(amount, msisdn, ref, desc, use_mode)
        except MpesaError as e:
            message = str(e) or "STK push error"
            self.store.mark_failed(pending_id, message)
            self.telemetry.intent_terminal(pending_id, "FAILED", "initiate")
            logger.warning(
                "payment_stk_push_failed",
                extra={"intent_id": pending_id, "msisdn": mask_msisdn(msisdn), "error": message},
            )
            raise GatewayError(message, intent_id=pending_id) from e

        canonical = self.store.attach_correlation(
            pending, resp.checkout_request_id, resp.merchant_request_id
        )
        canonical_id = canonical.id
        if canonical_id != pending_id:
            self.telemetry.side_effect(self._drop_duplicate(pending_id, canonical_id))

        logger.info(
            "payment_stk_push_sent",
            extra={
                "intent_id": canonical_id,
                "checkout_request_id": resp.checkout_request_id,
                "merchant_request_id": resp.merchant_request_id,
                "amount": amount,
                "mode": use_mode,
            },
        )
        return InitiationResult(
            intent_id=canonical_id,
            message=resp.customer_message or DEFAULT_CUSTOMER_MESSAGE,
            checkout_request_id=resp.checkout_request_id,
            merchant_request_id=resp.merchant_request_id or None,
            amount=amount,
            account_ref=ref,
            mode=use_mode,
        )

    def initiate_upgrade(self, tier: Tier, phone: Any, user_id: str, mode: str | None = None) -> InitiationResult:
        """Tier upgrade: amount comes from the server price table, never the client."""
        return self.initiate(
            amount=tier_price(tier, self.settings),
            phone=phone,
            target_tier=tier,
            linkage=Linkage(user_id=user_id),
            description=f"Upgrade to {tier.value.title()}",
            mode=mode,
        )

    def _drop_duplicate(self, pending_id: str, canonical_id: str) -> SideEffectResult:
        try:
            self.store.delete_orphan(pending_id)
        except Exception as e:
            self.db.rollback()
            return SideEffectResult(
                effect="duplicate_delete",
                ok=False,
                intent_id=pending_id,
                error=str(e),
                details={"canonical_id": canonical_id},
            )
        logger.info(
            "payment_intent_deduplicated",
            extra={"pending_id": pending_id, "canonical_id": canonical_id},
        )
        return SideEffectResult(effect="duplicate_delete", ok=True, intent_id=pending_id)
