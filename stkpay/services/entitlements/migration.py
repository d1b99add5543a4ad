"""
One-off copy of subscription tiers stored under legacy column names into the
canonical users.subscription field.
"""
import logging

from sqlalchemy import inspect, text
from sqlalchemy.orm import Session

from stkpay.models.user import ENTITLEMENT_SCHEMA_VERSION
from stkpay.services.entitlements.tiers import TIER_RANK, Tier, parse_tier

logger = logging.getLogger(__name__)

LEGACY_TIER_COLUMNS = ("tier", "plan", "subscription_level", "subscriptionLevel")


def legacy_columns_present(db: Session) -> list[str]:
    columns = {c["name"] for c in inspect(db.get_bind()).get_columns("users")}
    return [name for name in LEGACY_TIER_COLUMNS if name in columns]


def migrate_legacy_tiers(db: Session, dry_run: bool = False) -> dict:
    """Raise users.subscription to the best tier found in any legacy column."""
    legacy = legacy_columns_present(db)
    if not legacy:
        return {"columns": [], "checked": 0, "updated": 0}

    quoted = ", ".join(f'"{name}"' for name in legacy)
    rows = db.execute(text(f"SELECT id, subscription, {quoted} FROM users")).all()
    updated = 0
    for row in rows:
        current = parse_tier(row[1]) or Tier.FREE
        best = current
        for value in row[2:]:
            candidate = parse_tier(value)
            if candidate is not None and TIER_RANK[candidate] > TIER_RANK[best]:
                best = candidate
        if best == current and parse_tier(row[1]) is not None:
            continue
        updated += 1
        if not dry_run:
            db.execute(
                text("UPDATE users SET subscription = :tier, entitlement_version = :version WHERE id = :id"),
                {"tier": best.value, "version": ENTITLEMENT_SCHEMA_VERSION, "id": row[0]},
            )
    if not dry_run:
        db.commit()
    logger.info(
        "legacy_tier_migration",
        extra={"operation": "dry_run" if dry_run else "apply", "granted": updated},
    )
    return {"columns": legacy, "checked": len(rows), "updated": updated}
