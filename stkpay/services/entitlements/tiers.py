"""
Subscription tiers and the server-side price table.
"""
import enum

from stkpay.core.config import Settings


class Tier(str, enum.Enum):
    FREE = "FREE"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"

    @property
    def rank(self) -> int:
        return TIER_RANK[self]


TIER_RANK = {Tier.FREE: 0, Tier.GOLD: 1, Tier.PLATINUM: 2}
PAID_TIERS = (Tier.GOLD, Tier.PLATINUM)


def clamp_tier(value: str | None) -> Tier:
    """Purchasable tier from client input; anything but PLATINUM is GOLD."""
    if (value or "").strip().upper() == Tier.PLATINUM.value:
        return Tier.PLATINUM
    return Tier.GOLD


def tier_price(tier: Tier, settings: Settings) -> int:
    if tier == Tier.PLATINUM:
        return settings.tier_price_platinum
    if tier == Tier.GOLD:
        return settings.tier_price_gold
    raise ValueError(f"{tier.value} is not purchasable")


def tier_from_account_ref(account_ref: str | None) -> Tier | None:
    """The upgrade flow stores the tier name as the account reference."""
    ref = (account_ref or "").strip().upper()
    for tier in PAID_TIERS:
        if ref == tier.value:
            return tier
    return None


def parse_tier(value: str | None) -> Tier | None:
    try:
        return Tier((value or "").strip().upper())
    except ValueError:
        return None


def tiers_ranked_below(tier: Tier) -> list[str]:
    return [t.value for t, rank in TIER_RANK.items() if rank < tier.rank]
