import itertools

import pytest

from core import BucketAllocation, BucketCostBasis
from rebalance import (
    NONE,
    REBALANCE_RULES,
    REDUCE_WITHDRAWAL,
    REFILL_BUCKET1,
    REFILL_BUCKET2,
    get_rebalance_recommendation,
    max_gain_sell_amount,
    rebalance_transfer_jit,
    would_realize_loss,
    would_realize_loss_jit,
)

W = 24_000.0


@pytest.mark.parametrize(
    "value, cost, expected",
    [
        (90_000, 100_000, True),
        (99_999, 100_000, True),
        (100_000, 100_000, False),
        (120_000, 100_000, False),
        (50_000, 0, False),
        (0, 100_000, False),
    ],
)
def test_would_realize_loss(value, cost, expected):
    assert would_realize_loss(value, cost, 10_000) is expected


@pytest.mark.parametrize(
    "value, cost, expected",
    [(120_000, 100_000, 20_000), (100_000, 100_000, 0), (80_000, 100_000, 0), (5_000, 0, 5_000)],
)
def test_max_gain_sell_amount(value, cost, expected):
    assert max_gain_sell_amount(value, cost) == expected


def test_well_funded_bucket1_needs_nothing():
    rec = get_rebalance_recommendation(BucketAllocation(75_000, 175_000, 250_000), W)
    assert rec.action == NONE
    assert not rec.is_transfer


def test_urgent_refill_from_equities():
    rec = get_rebalance_recommendation(
        BucketAllocation(20_000, 50_000, 100_000), W, avoid_loss_realization=False
    )
    assert rec.action == REFILL_BUCKET1
    assert (rec.from_bucket, rec.to_bucket, rec.amount) == (3, 1, 36_000)
    assert rec.urgency == "high"
    assert not rec.avoided_loss


def test_urgent_refill_falls_back_to_bonds():
    rec = get_rebalance_recommendation(BucketAllocation(10_000, 100_000, 20_000), W)
    assert (rec.action, rec.from_bucket, rec.amount) == (REFILL_BUCKET1, 2, 36_000)


def test_urgent_without_sources_reduces_withdrawal():
    rec = get_rebalance_recommendation(BucketAllocation(10_000, 20_000, 20_000), W)
    assert rec.action == REDUCE_WITHDRAWAL
    assert rec.avoided_loss
    assert not rec.is_transfer


def test_urgent_skips_underwater_equities():
    alloc = BucketAllocation(10_000, 30_000, 100_000)
    cost = BucketCostBasis(10_000, 30_000, 150_000)
    rec = get_rebalance_recommendation(alloc, W, cost_basis=cost)
    assert (rec.action, rec.from_bucket, rec.amount) == (REFILL_BUCKET1, 2, 36_000)


def test_urgent_with_everything_underwater():
    alloc = BucketAllocation(10_000, 30_000, 100_000)
    cost = BucketCostBasis(10_000, 40_000, 150_000)
    rec = get_rebalance_recommendation(alloc, W, cost_basis=cost)
    assert rec.action == REDUCE_WITHDRAWAL
    assert rec.avoided_loss


def test_loss_avoidance_off_ignores_cost_basis():
    alloc = BucketAllocation(10_000, 30_000, 100_000)
    cost = BucketCostBasis(10_000, 40_000, 150_000)
    rec = get_rebalance_recommendation(alloc, W, cost_basis=cost, avoid_loss_realization=False)
    assert (rec.from_bucket, rec.amount) == (3, 36_000)


def test_medium_refill():
    rec = get_rebalance_recommendation(BucketAllocation(50_000, 175_000, 100_000), W)
    assert (rec.action, rec.from_bucket, rec.to_bucket, rec.amount) == (REFILL_BUCKET1, 3, 1, 24_000)
    assert rec.urgency == "medium"


def test_medium_refill_blocked_by_loss_waits():
    alloc = BucketAllocation(50_000, 175_000, 100_000)
    cost = BucketCostBasis(50_000, 175_000, 120_000)
    rec = get_rebalance_recommendation(alloc, W, cost_basis=cost)
    assert rec.action == NONE
    assert rec.avoided_loss


def test_bucket2_refill():
    rec = get_rebalance_recommendation(BucketAllocation(75_000, 50_000, 100_000), W)
    assert (rec.action, rec.from_bucket, rec.to_bucket, rec.amount) == (REFILL_BUCKET2, 3, 2, 48_000)
    assert rec.urgency == "low"


def test_bucket2_refill_blocked_by_loss_falls_through():
    alloc = BucketAllocation(75_000, 50_000, 100_000)
    cost = BucketCostBasis(75_000, 50_000, 130_000)
    rec = get_rebalance_recommendation(alloc, W, cost_basis=cost)
    assert rec.action == NONE
    assert not rec.avoided_loss


@pytest.mark.parametrize("withdrawal", [0.0, -1_000.0])
def test_no_withdrawal_means_infinite_coverage(withdrawal):
    rec = get_rebalance_recommendation(BucketAllocation(0, 0, 100_000), withdrawal)
    assert rec.action == NONE


def test_rule_order():
    assert [r.name for r in REBALANCE_RULES] == [
        "urgent_bucket1_refill",
        "bucket1_refill",
        "bucket2_refill",
        "adequately_funded",
    ]


LEVELS = [0.0, 10_000.0, 30_000.0, 50_000.0, 70_000.0, 100_000.0, 250_000.0]
COST_FACTORS = [0.7, 1.0, 1.3]


@pytest.mark.parametrize("use_cost_basis", [True, False])
def test_jit_ladder_matches_rule_list(use_cost_basis):
    for b1, b2, b3 in itertools.product(LEVELS, repeat=3):
        for f2, f3 in itertools.product(COST_FACTORS, repeat=2):
            alloc = BucketAllocation(b1, b2, b3)
            cost = BucketCostBasis(b1, b2 * f2, b3 * f3)
            rec = get_rebalance_recommendation(
                alloc,
                W,
                cost_basis=cost if use_cost_basis else None,
                avoid_loss_realization=use_cost_basis,
            )
            expected = (rec.from_bucket, rec.to_bucket, rec.amount) if rec.is_transfer else (0, 0, 0.0)
            src, dst, amount = rebalance_transfer_jit(
                b1, b2, b3, cost.bucket1, cost.bucket2, cost.bucket3, W, use_cost_basis
            )
            assert (src, dst, amount) == expected, (alloc, cost)


def test_transfer_amounts_are_positive():
    for b1, b2, b3 in itertools.product(LEVELS, repeat=3):
        rec = get_rebalance_recommendation(BucketAllocation(b1, b2, b3), W)
        if rec.is_transfer:
            assert rec.amount > 0


def test_empty_bucket_is_not_a_loss():
    assert not would_realize_loss(0.0, 50_000.0)
    assert not would_realize_loss_jit(0.0, 50_000.0)
