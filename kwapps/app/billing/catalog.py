"""Static catalog definitions for subscription tiers."""
from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Sequence

from .exceptions import ValidationError
from .models import SubscriptionTier


BASIC = SubscriptionTier(
    tier_id="basic",
    display_name_en="Basic",
    display_name_ar="أساسي",
    price=Decimal("23.000"),
    credits_per_period=Decimal("100"),
    daily_bonus_credits=Decimal("5"),
    features=("ai_generation", "preview", "publish"),
    sort_order=1,
)

PRO = SubscriptionTier(
    tier_id="pro",
    display_name_en="Pro",
    display_name_ar="احترافي",
    price=Decimal("38.000"),
    credits_per_period=Decimal("200"),
    daily_bonus_credits=Decimal("8"),
    features=("ai_generation", "preview", "publish", "custom_domain"),
    sort_order=2,
)

PREMIUM = SubscriptionTier(
    tier_id="premium",
    display_name_en="Premium",
    display_name_ar="مميز",
    price=Decimal("59.000"),
    credits_per_period=Decimal("350"),
    daily_bonus_credits=Decimal("12"),
    features=("ai_generation", "preview", "publish", "custom_domain", "image_generation"),
    sort_order=3,
)

ENTERPRISE = SubscriptionTier(
    tier_id="enterprise",
    display_name_en="Enterprise",
    display_name_ar="مؤسسي",
    price=Decimal("75.000"),
    credits_per_period=Decimal("500"),
    daily_bonus_credits=Decimal("15"),
    features=(
        "ai_generation",
        "preview",
        "publish",
        "custom_domain",
        "image_generation",
        "priority_support",
    ),
    sort_order=4,
)

DEFAULT_TIERS: Dict[str, SubscriptionTier] = {
    tier.tier_id: tier for tier in (BASIC, PRO, PREMIUM, ENTERPRISE)
}


class TierSource(Protocol):
    """Anything able to list the persisted tier catalog."""

    def list_tiers(self) -> Sequence[SubscriptionTier]:
        ...


class TierCatalog:
    """Read-only view over the tier catalog."""

    def __init__(self, source: TierSource) -> None:
        self._source = source

    def list_tiers(self, *, include_inactive: bool = False) -> List[SubscriptionTier]:
        """Return tiers ordered for display."""

        tiers = [
            tier
            for tier in self._source.list_tiers()
            if include_inactive or tier.is_active
        ]
        return sorted(tiers, key=lambda tier: (tier.sort_order, tier.tier_id))

    def get_tier(self, tier_id: str) -> Optional[SubscriptionTier]:
        for tier in self._source.list_tiers():
            if tier.tier_id == tier_id:
                return tier
        return None

    def get_purchasable_tier(self, tier_id: str) -> SubscriptionTier:
        """Return a tier that can be checked out, raising otherwise."""

        tier = self.get_tier(tier_id)
        if tier is None:
            raise ValidationError(f"Unknown tier: {tier_id}", detail={"tier_id": tier_id})
        if not tier.is_active:
            raise ValidationError(f"Tier is not available for purchase: {tier_id}", detail={"tier_id": tier_id})
        return tier


__all__ = ["DEFAULT_TIERS", "TierCatalog", "TierSource"]
