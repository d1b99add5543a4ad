"""
Entitlement grantor: applies a paid tier to users.subscription.

Grants are upgrade-only conditional UPDATEs, so applying the same grant twice
(or a cheaper tier after a dearer one) leaves the user unchanged. Nothing here
raises to the caller; outcomes come back as GrantResult for telemetry.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from stkpay.models.payment_intent import PaymentIntent
from stkpay.models.user import ENTITLEMENT_SCHEMA_VERSION, User
from stkpay.services.entitlements.tiers import (
    PAID_TIERS,
    Tier,
    parse_tier,
    tier_from_account_ref,
    tiers_ranked_below,
)
from stkpay.services.payments.store import IntentStore
from stkpay.services.payments.telemetry import PaymentTelemetry

logger = logging.getLogger(__name__)


@dataclass
class GrantResult:
    ok: bool
    status: str  # granted, already_entitled, skipped, failed
    user_id: str | None = None
    tier: str | None = None
    error: str | None = None


class EntitlementGrantor:
    def __init__(self, db: Session, telemetry: PaymentTelemetry | None = None) -> None:
        self.db = db
        self.store = IntentStore(db)
        self.telemetry = telemetry or PaymentTelemetry(db)

    def grant(self, user_id: str, tier: Tier | str) -> GrantResult:
        """Raise user_id to `tier` unless they already hold it or better."""
        target = tier if isinstance(tier, Tier) else parse_tier(tier)
        if target is None or target == Tier.FREE:
            return GrantResult(ok=False, status="failed", user_id=user_id, tier=str(tier), error="unknown tier")
        try:
            res = self.db.execute(
                update(User)
                .where(User.id == user_id, User.subscription.in_(tiers_ranked_below(target)))
                .values(
                    subscription=target.value,
                    subscription_updated_at=datetime.now(timezone.utc),
                    entitlement_version=ENTITLEMENT_SCHEMA_VERSION,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            if res.rowcount == 1:
                return GrantResult(ok=True, status="granted", user_id=user_id, tier=target.value)
            exists = self.db.query(User.id).filter(User.id == user_id).first()
        except Exception as e:
            self.db.rollback()
            logger.exception("entitlement_grant_error", extra={"user_id": user_id, "tier": target.value})
            return GrantResult(ok=False, status="failed", user_id=user_id, tier=target.value, error=str(e))
        if exists is None:
            return GrantResult(ok=False, status="failed", user_id=user_id, tier=target.value, error="user not found")
        return GrantResult(ok=True, status="already_entitled", user_id=user_id, tier=target.value)

    def grant_for_intent(self, intent: PaymentIntent) -> GrantResult:
        """Grant the tier an upgrade intent paid for and stamp entitlement_granted_at."""
        tier = tier_from_account_ref(intent.account_ref)
        if not intent.user_id or tier is None:
            result = GrantResult(ok=True, status="skipped", user_id=intent.user_id)
            self.telemetry.grant(intent.id, result.status, intent.user_id, None)
            return result

        result = self.grant(intent.user_id, tier)
        if result.ok:
            try:
                self.store.mark_entitlement_granted(intent.id)
            except Exception as e:
                self.db.rollback()
                logger.warning(
                    "entitlement_stamp_failed",
                    extra={"intent_id": intent.id, "error": str(e)},
                )
        self.telemetry.grant(intent.id, result.status, result.user_id, result.tier, result.error)
        return result

    def regrant_pending(self, limit: int = 100, grace_seconds: int = 300) -> dict:
        """Re-apply grants for PAID upgrade intents that were never stamped."""
        paid_before = datetime.now(timezone.utc) - timedelta(seconds=grace_seconds)
        intents = self.store.list_paid_ungranted(
            paid_before, [t.value for t in PAID_TIERS], limit=limit
        )
        counts = {"checked": len(intents), "granted": 0, "already_entitled": 0, "failed": 0, "skipped": 0}
        for intent in intents:
            result = self.grant_for_intent(intent)
            counts[result.status] += 1
        if intents:
            logger.info(
                "entitlement_regrant_sweep",
                extra={"granted": counts["granted"], "failed": counts["failed"], "skipped": counts["skipped"]},
            )
        return counts
