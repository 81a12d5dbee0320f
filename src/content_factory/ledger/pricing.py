"""Credit prices, subscription plans and per-plan request limits."""

from __future__ import annotations

from dataclasses import dataclass

from content_factory.errors import PlanRestricted, ValidationError

# (max units in the request, credits per unit); larger requests use BULK_UNIT_PRICE.
CONTENT_PRICE_BRACKETS: tuple[tuple[int, int], ...] = ((10, 5), (30, 4))
BULK_UNIT_PRICE = 3
SCAN_PRICE = 20

FREE_TIER = "free"
FREE_SIGNUP_CREDITS = 10


@dataclass(frozen=True, slots=True)
class PlanTier:
    """Purchasable plan with its fixed monthly credit grant."""

    name: str
    label: str
    credits: int
    price_cents: int
    period_months: int = 1


PLANS: dict[str, PlanTier] = {
    "free": PlanTier(name="free", label="Free", credits=FREE_SIGNUP_CREDITS, price_cents=0),
    "starter": PlanTier(name="starter", label="Starter", credits=120, price_cents=900),
    "pro": PlanTier(name="pro", label="Pro", credits=400, price_cents=1900),
}
PAID_TIERS = frozenset(name for name, plan in PLANS.items() if plan.price_cents > 0)


def content_unit_price(total_units: int) -> int:
    for max_units, price in CONTENT_PRICE_BRACKETS:
        if total_units <= max_units:
            return price
    return BULK_UNIT_PRICE


def content_cost(total_units: int) -> int:
    """Credits charged for a content task of ``total_units`` units."""

    if total_units < 1:
        raise ValidationError("total_units must be >= 1.", field="total_units")
    return total_units * content_unit_price(total_units)


def scan_cost() -> int:
    return SCAN_PRICE


def get_plan(tier: str) -> PlanTier:
    plan = PLANS.get(tier)
    if plan is None:
        raise ValidationError(
            f"Unknown subscription tier: {tier!r}. Expected one of: {', '.join(sorted(PLANS))}.",
            field="tier",
        )
    return plan


def enforce_plan_limits(
    *,
    tier: str,
    balance_before: int,
    kind: str,
    total_units: int,
    free_tier_max_units: int,
) -> None:
    """Reject requests the free plan does not allow.

    A free user whose balance is still within the signup grant may create at
    most ``free_tier_max_units`` content units and no scans. Topping up the
    balance beyond the grant lifts both restrictions.
    """

    if tier != FREE_TIER or balance_before > FREE_SIGNUP_CREDITS:
        return
    if kind == "scan":
        raise PlanRestricted(
            "Site scans require a paid plan. Upgrade to starter or pro.",
            field="kind",
            tier=tier,
        )
    if total_units > free_tier_max_units:
        raise PlanRestricted(
            f"Free plan allows at most {free_tier_max_units} content units per task.",
            field="total_units",
            tier=tier,
            limit=free_tier_max_units,
        )
