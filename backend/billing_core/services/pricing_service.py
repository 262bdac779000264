"""
Pricing service for bulk purchases.

WHAT: Computes the cost of N seats of a plan, flat or tiered.

WHY: Bulk buyers see the breakdown before paying, and the gateway price
created for a tiered plan uses the same graduated walk, so the preview
matches the invoice.

HOW: Tiers are walked in min_quantity order. Each tier takes at most its
capacity (max - min + 1); a max of 0 makes the tier absorb the rest.
All amounts are integers in minor units (cents).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from billing_core.core.exceptions import InvalidPricingTiersError, ValidationError
from billing_core.models.plan import Plan


@dataclass
class TierCost:
    """One line of a price breakdown."""

    range: str
    quantity: int
    unit_price: int
    subtotal: int


@dataclass
class PriceBreakdown:
    """Result of compute_price."""

    plan_name: str
    quantity: int
    currency: str
    total: int
    flat_total: int
    savings: int
    average_per_unit: float
    tiers: List[TierCost] = field(default_factory=list)


def validate_pricing_tiers(tiers: List[Dict[str, Any]]) -> List[Dict[str, int]]:
    """
    Check that tiers cover [1, inf) contiguously.

    Rules:
    - First tier starts at 1
    - Each tier starts at the previous max + 1
    - max_quantity is 0 (unbounded) on the last tier and only there
    - unit_price >= 0 and max >= min when bounded

    Returns:
        Tiers sorted by min_quantity

    Raises:
        InvalidPricingTiersError: If any rule is broken
    """
    ordered = sorted(tiers, key=lambda t: t["min_quantity"])
    if not ordered:
        raise InvalidPricingTiersError(message="Tiered pricing needs at least one tier")
    expected_start = 1

    for index, tier in enumerate(ordered):
        start = tier["min_quantity"]
        end = tier["max_quantity"]
        is_last = index == len(ordered) - 1

        if start != expected_start:
            raise InvalidPricingTiersError(
                message=f"Tier {index + 1} must start at {expected_start}",
                tier=index + 1,
            )
        if tier["unit_price"] < 0:
            raise InvalidPricingTiersError(
                message=f"Tier {index + 1} has a negative unit price",
                tier=index + 1,
            )
        if end == 0:
            if not is_last:
                raise InvalidPricingTiersError(
                    message="Only the last tier may be unbounded",
                    tier=index + 1,
                )
            continue
        if end < start:
            raise InvalidPricingTiersError(
                message=f"Tier {index + 1} ends before it starts",
                tier=index + 1,
            )
        expected_start = end + 1

    if ordered[-1]["max_quantity"] != 0:
        raise InvalidPricingTiersError(message="The last tier must be unbounded (max_quantity 0)")

    return ordered


class PricingService:
    """
    Stateless price calculator.

    Example:
        breakdown = PricingService().compute_price(plan, 20)
        breakdown.total  # 16000
    """

    def compute_price(self, plan: Plan, quantity: int) -> PriceBreakdown:
        """
        Price N seats of a plan.

        Raises:
            ValidationError: If quantity < 1
        """
        if quantity < 1:
            raise ValidationError(message="quantity must be at least 1", quantity=quantity)

        unit_price = plan.unit_price or 0
        flat_total = unit_price * quantity
        tiers = plan.sorted_tiers() if plan.uses_tiered_pricing else []

        if not tiers:
            return PriceBreakdown(
                plan_name=plan.name,
                quantity=quantity,
                currency=plan.currency,
                total=flat_total,
                flat_total=flat_total,
                savings=0,
                average_per_unit=unit_price / 100,
                tiers=[
                    TierCost(
                        range=f"1-{quantity}",
                        quantity=quantity,
                        unit_price=unit_price,
                        subtotal=flat_total,
                    )
                ],
            )

        remaining = quantity
        total = 0
        lines: List[TierCost] = []

        for tier in tiers:
            if remaining <= 0:
                break

            start = tier["min_quantity"]
            end = tier["max_quantity"]

            if end == 0:
                taken = remaining
                label = f"{start}+"
            else:
                taken = min(remaining, end - start + 1)
                label = f"{start}-{start + taken - 1}"

            subtotal = taken * tier["unit_price"]
            lines.append(
                TierCost(range=label, quantity=taken, unit_price=tier["unit_price"], subtotal=subtotal)
            )
            total += subtotal
            remaining -= taken

        return PriceBreakdown(
            plan_name=plan.name,
            quantity=quantity,
            currency=plan.currency,
            total=total,
            flat_total=flat_total,
            savings=flat_total - total,
            average_per_unit=total / quantity / 100,
            tiers=lines,
        )

    def total_cost(self, plan: Plan, quantity: int) -> int:
        return self.compute_price(plan, quantity).total
