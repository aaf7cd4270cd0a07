"""Subscription plan and top-up catalog."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    credits: int
    price_monthly_minor: int  # paise
    max_chars_per_generation: int
    generations_per_minute: int
    generations_per_hour: int
    can_topup: bool = True

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "credits": self.credits,
            "price": self.price_monthly_minor / 100,
            "max_chars_per_generation": self.max_chars_per_generation,
            "generations_per_minute": self.generations_per_minute,
            "generations_per_hour": self.generations_per_hour,
            "can_topup": self.can_topup,
        }


@dataclass(frozen=True)
class TopupPackage:
    id: str
    name: str
    credits: int
    price_by_tier: Dict[str, int]


PLANS: List[Plan] = [
    Plan("free", "Free", 5000, 0, 1000, 3, 30, can_topup=False),
    Plan("starter", "Starter", 35000, 39500, 3000, 5, 100),
    Plan("creator", "Creator", 150000, 139500, 5000, 10, 200),
    Plan("pro", "Pro", 500000, 219500, 10000, 15, 400),
    Plan("advanced", "Advanced", 1000000, 349500, 15000, 20, 600),
]

TOPUP_PACKAGES: List[TopupPackage] = [
    TopupPackage("topup_10k", "10K Credits", 10000, {"starter": 16800, "creator": 12200, "pro": 9900, "advanced": 8500}),
    TopupPackage("topup_25k", "25K Credits", 25000, {"starter": 42000, "creator": 30500, "pro": 24750, "advanced": 21250}),
    TopupPackage("topup_50k", "50K Credits", 50000, {"starter": 84000, "creator": 61000, "pro": 49500, "advanced": 42500}),
    TopupPackage("topup_100k", "100K Credits", 100000, {"starter": 168000, "creator": 122000, "pro": 99000, "advanced": 85000}),
]

_PLANS_BY_ID = {plan.id: plan for plan in PLANS}
_TOPUPS_BY_ID = {package.id: package for package in TOPUP_PACKAGES}

DEFAULT_TIER = "free"


def get_plan(tier: Optional[str]) -> Plan:
    """Resolve a tier id, falling back to the free plan for unknown tiers."""
    return _PLANS_BY_ID.get(str(tier or "").strip().lower(), _PLANS_BY_ID[DEFAULT_TIER])


def find_plan(plan_id: str) -> Optional[Plan]:
    return _PLANS_BY_ID.get(plan_id)


def find_topup(package_id: str) -> Optional[TopupPackage]:
    return _TOPUPS_BY_ID.get(package_id)


def plan_catalog() -> List[Dict[str, object]]:
    return [plan.to_dict() for plan in PLANS]
