"""
Rebalancing policy for the three-bucket strategy.

After each year's withdrawal the policy looks at how many years of
withdrawals the liquidity and bond buckets still cover and recommends at
most one transfer. Rules are evaluated top to bottom and the first one that
produces a recommendation wins:

1. Bucket 1 covers less than 1.5 years: refill it urgently from bucket 3,
   else from bucket 2, else recommend reducing the withdrawal.
2. Bucket 1 covers less than 2.5 years and bucket 3 holds more than two
   withdrawals: refill bucket 1 from bucket 3.
3. Bucket 2 covers less than 3 years and bucket 3 holds more than three
   withdrawals: refill bucket 2 from bucket 3.
4. Otherwise do nothing.

With loss avoidance enabled, a transfer out of a bucket trading below its
cost basis is cut down to the bucket's gains, or skipped when those gains
are worth less than half a year's withdrawal.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

import numpy as np
from numba import njit

from core import (
    DEFAULT_BUCKET_CONFIGS,
    BucketAllocation,
    BucketConfig,
    BucketCostBasis,
    bucket_coverage_years,
)


URGENT_YEARS = 1.5
REFILL_YEARS = 2.5
BUCKET2_YEARS = 3.0
MIN_GAIN_FRACTION = 0.5

NONE = "none"
REFILL_BUCKET1 = "refill_bucket1"
REFILL_BUCKET2 = "refill_bucket2"
REDUCE_WITHDRAWAL = "reduce_withdrawal"


@njit(cache=True)
def would_realize_loss_jit(current_value: float, cost_basis: float) -> bool:
    """An empty bucket never counts as a loss, whatever its remaining basis."""
    if cost_basis <= 0 or current_value <= 0:
        return False
    return current_value / cost_basis < 1


def would_realize_loss(current_value: float, cost_basis: float, amount_to_sell: float = 0.0) -> bool:
    """
    Return True if selling from a bucket would realize a loss.

    The decision only depends on whether the bucket trades below its cost
    basis; ``amount_to_sell`` is accepted for call-site readability. A
    bucket worth nothing returns False, since there is nothing left to sell.
    """
    return bool(would_realize_loss_jit(current_value, cost_basis))


@njit(cache=True)
def max_gain_sell_amount(current_value: float, cost_basis: float) -> float:
    """Largest amount that can be sold while only realizing gains."""
    if current_value <= cost_basis:
        return 0.0
    return current_value - cost_basis


@njit(cache=True)
def _adjusted_transfer_jit(
    requested: float,
    from_value: float,
    from_cost: float,
    annual_withdrawal: float,
    use_cost_basis: bool,
) -> Tuple[float, bool]:
    """JIT-compiled loss-avoidance clamp. Returns (amount, avoided_loss)."""
    if not use_cost_basis:
        return requested, False
    if would_realize_loss_jit(from_value, from_cost):
        max_gain = max_gain_sell_amount(from_value, from_cost)
        if max_gain > annual_withdrawal * MIN_GAIN_FRACTION:
            return np.floor(max_gain + 0.5), True
        return 0.0, True
    return requested, False


@dataclass(frozen=True)
class RebalanceRecommendation:
    action: str
    description: str
    urgency: str
    from_bucket: Optional[int] = None
    to_bucket: Optional[int] = None
    amount: Optional[float] = None
    avoided_loss: bool = False

    @property
    def is_transfer(self) -> bool:
        return (
            self.action != NONE
            and bool(self.amount)
            and self.from_bucket is not None
            and self.to_bucket is not None
        )


@dataclass(frozen=True)
class PolicyContext:
    """Everything a rule needs to look at for one decision."""

    allocation: BucketAllocation
    annual_withdrawal: float
    buckets: Sequence[BucketConfig]
    cost_basis: Optional[BucketCostBasis] = None
    avoid_loss_realization: bool = True

    @property
    def bucket1_years(self) -> float:
        return bucket_coverage_years(self.allocation.bucket1, self.annual_withdrawal)

    @property
    def bucket2_years(self) -> float:
        return bucket_coverage_years(self.allocation.bucket2, self.annual_withdrawal)

    @property
    def uses_cost_basis(self) -> bool:
        return self.avoid_loss_realization and self.cost_basis is not None

    def adjusted_transfer(self, from_bucket: int, requested: float) -> Tuple[float, bool]:
        from_cost = self.cost_basis.get(from_bucket) if self.cost_basis is not None else 0.0
        amount, avoided = _adjusted_transfer_jit(
            float(requested),
            float(self.allocation.get(from_bucket)),
            float(from_cost),
            float(self.annual_withdrawal),
            self.uses_cost_basis,
        )
        return float(amount), bool(avoided)

    def name(self, bucket: int) -> str:
        return self.buckets[bucket - 1].name


@dataclass(frozen=True)
class RebalanceRule:
    """A guard plus a decision; ``decide`` returning None falls through."""

    name: str
    applies: Callable[[PolicyContext], bool]
    decide: Callable[[PolicyContext], Optional[RebalanceRecommendation]]


def _requested(multiple: float, annual_withdrawal: float) -> float:
    return float(np.floor(annual_withdrawal * multiple + 0.5))


def _urgent_refill(ctx: PolicyContext) -> RebalanceRecommendation:
    w = ctx.annual_withdrawal
    for source in (3, 2):
        if ctx.allocation.get(source) <= w:
            continue
        amount, avoided = ctx.adjusted_transfer(source, _requested(URGENT_YEARS, w))
        if amount > 0:
            if avoided:
                description = (
                    f"Bucket 1 critically low. Partial transfer from bucket {source} "
                    f"({ctx.name(source)}), gains only to avoid realizing a loss."
                )
            else:
                description = (
                    f"Bucket 1 ({ctx.name(1)}) critically low. Transfer from bucket "
                    f"{source} ({ctx.name(source)}) recommended."
                )
            return RebalanceRecommendation(
                action=REFILL_BUCKET1,
                description=description,
                urgency="high",
                from_bucket=source,
                to_bucket=1,
                amount=amount,
                avoided_loss=avoided,
            )
    return RebalanceRecommendation(
        action=REDUCE_WITHDRAWAL,
        description=(
            "Capital critically low and no bucket can refill liquidity without "
            "realizing a loss. Reduce the withdrawal instead."
        ),
        urgency="high",
        avoided_loss=True,
    )


def _medium_refill(ctx: PolicyContext) -> Optional[RebalanceRecommendation]:
    amount, avoided = ctx.adjusted_transfer(3, _requested(1.0, ctx.annual_withdrawal))
    if amount > 0:
        return RebalanceRecommendation(
            action=REFILL_BUCKET1,
            description=(
                f"Bucket 1 should be refilled. Only gains from bucket 3 ({ctx.name(3)}) are moved."
                if avoided
                else "Bucket 1 should be refilled while markets allow it."
            ),
            urgency="medium",
            from_bucket=3,
            to_bucket=1,
            amount=amount,
            avoided_loss=avoided,
        )
    if avoided:
        return RebalanceRecommendation(
            action=NONE,
            description="Bucket 1 is low but a transfer would realize a loss. Waiting is recommended.",
            urgency="low",
            avoided_loss=True,
        )
    return None


def _bucket2_refill(ctx: PolicyContext) -> Optional[RebalanceRecommendation]:
    amount, avoided = ctx.adjusted_transfer(3, _requested(2.0, ctx.annual_withdrawal))
    if amount > 0:
        return RebalanceRecommendation(
            action=REFILL_BUCKET2,
            description=(
                f"Bucket 2 should be refilled. Only gains from bucket 3 ({ctx.name(3)}) are locked in."
                if avoided
                else f"Bucket 2 should be refilled. Lock in gains from {ctx.name(3)}."
            ),
            urgency="low",
            from_bucket=3,
            to_bucket=2,
            amount=amount,
            avoided_loss=avoided,
        )
    return None


def _adequately_funded(ctx: PolicyContext) -> RebalanceRecommendation:
    return RebalanceRecommendation(
        action=NONE,
        description="All buckets are adequately funded. No transfer needed.",
        urgency="low",
    )


REBALANCE_RULES: tuple[RebalanceRule, ...] = (
    RebalanceRule(
        "urgent_bucket1_refill",
        lambda ctx: ctx.bucket1_years < URGENT_YEARS,
        _urgent_refill,
    ),
    RebalanceRule(
        "bucket1_refill",
        lambda ctx: ctx.bucket1_years < REFILL_YEARS
        and ctx.allocation.bucket3 > ctx.annual_withdrawal * 2,
        _medium_refill,
    ),
    RebalanceRule(
        "bucket2_refill",
        lambda ctx: ctx.bucket2_years < BUCKET2_YEARS
        and ctx.allocation.bucket3 > ctx.annual_withdrawal * 3,
        _bucket2_refill,
    ),
    RebalanceRule("adequately_funded", lambda ctx: True, _adequately_funded),
)


def evaluate_rules(
    ctx: PolicyContext, rules: Sequence[RebalanceRule] = REBALANCE_RULES
) -> RebalanceRecommendation:
    for rule in rules:
        if not rule.applies(ctx):
            continue
        recommendation = rule.decide(ctx)
        if recommendation is not None:
            return recommendation
    return _adequately_funded(ctx)


def get_rebalance_recommendation(
    current_allocation: BucketAllocation,
    annual_withdrawal: float,
    custom_buckets: Optional[Sequence[BucketConfig]] = None,
    cost_basis: Optional[BucketCostBasis] = None,
    avoid_loss_realization: bool = True,
) -> RebalanceRecommendation:
    """Recommend at most one transfer for the post-withdrawal allocation."""
    ctx = PolicyContext(
        allocation=current_allocation,
        annual_withdrawal=annual_withdrawal,
        buckets=custom_buckets or DEFAULT_BUCKET_CONFIGS,
        cost_basis=cost_basis,
        avoid_loss_realization=avoid_loss_realization,
    )
    return evaluate_rules(ctx)


@njit(cache=True)
def rebalance_transfer_jit(
    b1: float,
    b2: float,
    b3: float,
    c1: float,
    c2: float,
    c3: float,
    w: float,
    use_cost_basis: bool,
) -> Tuple[int, int, float]:
    """
    JIT-compiled mirror of ``REBALANCE_RULES`` for the Monte Carlo kernel.

    Returns (from_bucket, to_bucket, amount); from_bucket 0 means no transfer.
    """
    if w > 0:
        b1_years = b1 / w
        b2_years = b2 / w
    else:
        b1_years = np.inf
        b2_years = np.inf

    if b1_years < URGENT_YEARS:
        requested = np.floor(w * URGENT_YEARS + 0.5)
        if b3 > w:
            amount, _ = _adjusted_transfer_jit(requested, b3, c3, w, use_cost_basis)
            if amount > 0:
                return 3, 1, amount
        if b2 > w:
            amount, _ = _adjusted_transfer_jit(requested, b2, c2, w, use_cost_basis)
            if amount > 0:
                return 2, 1, amount
        return 0, 0, 0.0

    if b1_years < REFILL_YEARS and b3 > w * 2:
        amount, avoided = _adjusted_transfer_jit(np.floor(w + 0.5), b3, c3, w, use_cost_basis)
        if amount > 0:
            return 3, 1, amount
        if avoided:
            return 0, 0, 0.0

    if b2_years < BUCKET2_YEARS and b3 > w * 3:
        amount, _ = _adjusted_transfer_jit(np.floor(w * 2.0 + 0.5), b3, c3, w, use_cost_basis)
        if amount > 0:
            return 3, 2, amount

    return 0, 0, 0.0
