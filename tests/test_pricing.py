from __future__ import annotations

import allure
import pytest

from content_factory.errors import PlanRestricted, ValidationError
from content_factory.ledger.ledger import prorated_credits
from content_factory.ledger.pricing import (
    PAID_TIERS,
    content_cost,
    enforce_plan_limits,
    get_plan,
    scan_cost,
)

pytestmark = [
    allure.epic("Credit Ledger"),
    allure.feature("Pricing & Plans"),
]


@pytest.mark.parametrize(
    ("units", "cost"),
    [(1, 5), (10, 50), (11, 44), (30, 120), (31, 93), (50, 150)],
)
def test_content_cost_uses_volume_brackets(units: int, cost: int) -> None:
    assert content_cost(units) == cost


def test_content_cost_rejects_empty_request() -> None:
    with pytest.raises(ValidationError):
        content_cost(0)


def test_scan_cost_is_flat() -> None:
    assert scan_cost() == 20


def test_plans() -> None:
    assert get_plan("starter").credits == 120
    assert get_plan("pro").price_cents == 1900
    assert PAID_TIERS == {"starter", "pro"}
    with pytest.raises(ValidationError, match="Unknown subscription tier"):
        get_plan("enterprise")


@pytest.mark.parametrize(
    ("cost", "numerator", "denominator", "expected"),
    [
        (12, 1, 3, 4),
        (50, 3, 10, 15),
        (5, 1, 2, 3),
        (7, 1, 3, 2),
        (20, 1, 1, 20),
        (20, 0, 1, 0),
        (10, 5, 2, 10),
    ],
)
def test_prorated_credits_rounds_half_up(
    cost: int,
    numerator: int,
    denominator: int,
    expected: int,
) -> None:
    assert prorated_credits(cost, numerator, denominator) == expected


def test_free_plan_limits_apply_within_signup_grant() -> None:
    with pytest.raises(PlanRestricted, match="at most 2 content units"):
        enforce_plan_limits(
            tier="free",
            balance_before=10,
            kind="content",
            total_units=3,
            free_tier_max_units=2,
        )
    with pytest.raises(PlanRestricted, match="require a paid plan"):
        enforce_plan_limits(
            tier="free",
            balance_before=10,
            kind="scan",
            total_units=1,
            free_tier_max_units=2,
        )

    enforce_plan_limits(
        tier="free",
        balance_before=10,
        kind="content",
        total_units=2,
        free_tier_max_units=2,
    )


def test_topped_up_or_paid_users_are_not_restricted() -> None:
    enforce_plan_limits(
        tier="free",
        balance_before=11,
        kind="scan",
        total_units=1,
        free_tier_max_units=2,
    )
    enforce_plan_limits(
        tier="starter",
        balance_before=5,
        kind="content",
        total_units=30,
        free_tier_max_units=2,
    )
