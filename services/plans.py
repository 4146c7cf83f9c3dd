import logging
from dataclasses import dataclass
from typing import Dict, Optional

from config import Settings
from models import SubscriptionTier
from services.exceptions import InvalidPlan, ValidationError

logger = logging.getLogger(__name__)

UNLIMITED = -1

TIER_LIMITS: Dict[str, Dict] = {
    "free": {
        "drops_per_month": 3,
        "recipients_per_drop": 3,
        "file_size_mb": 10,
        "storage_total_mb": 30,
        "analytics": "basic",
        "custom_branding": False,
        "export_data": False,
    },
    "individual": {
        "drops_per_month": 15,
        "recipients_per_drop": 20,
        "file_size_mb": 300,
        "storage_total_mb": 4500,
        "analytics": "advanced",
        "custom_branding": False,
        "export_data": True,
    },
    "business": {
        "drops_per_month": UNLIMITED,
        "recipients_per_drop": UNLIMITED,
        "file_size_mb": UNLIMITED,
        "storage_total_mb": UNLIMITED,
        "analytics": "premium",
        "custom_branding": True,
        "export_data": True,
    },
}

FEATURES = ("analytics", "export", "branding")


@dataclass(frozen=True)
class Plan:
    key: str
    name: str
    price_cents: int
    interval: str
    price_id: Optional[str]

    @property
    def tier(self) -> SubscriptionTier:
        return SubscriptionTier(self.key)


class PlanCatalog:
    """Purchasable plans keyed by tier name."""

    def __init__(self, plans):
        self._plans = {plan.key: plan for plan in plans}

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlanCatalog":
        return cls([
            Plan("individual", "Individual Plan", 999, "monthly", settings.stripe_individual_price_id),
            Plan("business", "Business Plan", 1999, "monthly", settings.stripe_business_price_id),
        ])

    def get(self, key) -> Plan:
        plan = self._plans.get(key) if isinstance(key, str) else None
        if plan is None:
            raise InvalidPlan(key)
        return plan

    def find(self, key) -> Optional[Plan]:
        return self._plans.get(key) if isinstance(key, str) else None

    def by_price_id(self, price_id: Optional[str]) -> Optional[Plan]:
        if not price_id:
            return None
        for plan in self._plans.values():
            if plan.price_id == price_id:
                return plan
        return None

    def all(self):
        return list(self._plans.values())


def tier_limits(tier: str) -> Dict:
    return dict(TIER_LIMITS.get(tier, TIER_LIMITS["free"]))


def _upgrade_prompt(title: str, description: str, suggested_plan: str, cta: str) -> Dict:
    return {
        "type": "hard",
        "title": title,
        "description": description,
        "suggested_plan": suggested_plan,
        "cta_text": cta,
    }


def check_feature_access(tier: str, feature: str) -> Dict:
    """Decide whether a tier may use a paid feature.

    Returns a dict with ``allowed`` and, when denied, ``reason`` and an
    ``upgrade_prompt`` describing the plan to suggest.
    """
    if feature not in FEATURES:
        raise ValidationError("Invalid feature parameter", details=f"feature={feature!r}")

    limits = tier_limits(tier)

    if feature == "analytics" and tier == "free":
        return {
            "allowed": False,
            "reason": "Advanced analytics requires a paid plan",
            "upgrade_prompt": _upgrade_prompt(
                "Unlock Advanced Analytics",
                "Get detailed insights, access patterns, and export capabilities with a paid plan.",
                "individual",
                "Upgrade for Analytics",
            ),
        }

    if feature == "export" and not limits["export_data"]:
        return {
            "allowed": False,
            "reason": "Data export requires a paid plan",
            "upgrade_prompt": _upgrade_prompt(
                "Export Your Data",
                "Export your analytics and drop data with Individual or Business plans.",
                "individual",
                "Upgrade to Export",
            ),
        }

    if feature == "branding" and not limits["custom_branding"]:
        return {
            "allowed": False,
            "reason": "Custom branding requires Business plan",
            "upgrade_prompt": _upgrade_prompt(
                "Custom Branding Available",
                "Remove DropAccess branding and add your own with the Business plan.",
                "business",
                "Upgrade to Business",
            ),
        }

    return {"allowed": True}
