"""Pure validation of per-category unit allocations."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from content_factory.errors import AllocationMismatch
from content_factory.tasks.models import ContentCategory

CONTENT_CATEGORIES: tuple[str, ...] = tuple(category.value for category in ContentCategory)


def validate_allocation(
    total_units: int,
    allocations: Mapping[str, object],
    *,
    categories: Iterable[str] = CONTENT_CATEGORIES,
) -> dict[str, int]:
    """Return the normalized allocation or raise ``AllocationMismatch``.

    Every known category appears in the result, missing ones as 0. Counts must
    be non-negative integers and their sum must equal ``total_units`` exactly.
    """

    known = tuple(categories)
    if _not_int(total_units) or total_units < 0:
        raise AllocationMismatch(
            f"total_units must be a non-negative integer, got {total_units!r}.",
            total_units=total_units if isinstance(total_units, int) else 0,
            allocated=0,
            field="total_units",
        )

    unknown = sorted(set(allocations) - set(known))
    if unknown:
        raise AllocationMismatch(
            f"Unknown allocation categories: {', '.join(unknown)}. "
            f"Expected any of: {', '.join(known)}.",
            total_units=total_units,
            allocated=0,
            field=unknown[0],
        )

    normalized: dict[str, int] = {}
    for category in known:
        count = allocations.get(category, 0)
        if _not_int(count) or count < 0:  # type: ignore[operator]
            raise AllocationMismatch(
                f"Allocation for {category} must be a non-negative integer, got {count!r}.",
                total_units=total_units,
                allocated=0,
                field=category,
            )
        normalized[category] = int(count)  # type: ignore[call-overload]

    allocated = sum(normalized.values())
    if allocated != total_units:
        raise AllocationMismatch(
            f"Allocations sum to {allocated} but total_units is {total_units}.",
            total_units=total_units,
            allocated=allocated,
            field="allocations",
        )
    return normalized


def _not_int(value: object) -> bool:
    return isinstance(value, bool) or not isinstance(value, int)
