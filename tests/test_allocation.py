import math

import numpy as np
import pytest

from core import (
    DEFAULT_BUCKET_CONFIGS,
    BucketConfig,
    ConfigurationError,
    RetirementInput,
    box_muller,
    bucket_coverage_years,
    generate_return,
    generate_returns,
    initial_allocation,
    withdrawal_rate,
    years_of_coverage,
)


def _buckets(w1, w2, w3, mean=0.0, vol=0.0):
    return (
        BucketConfig("Liquidity", w1, mean, vol),
        BucketConfig("Bonds", w2, mean, vol),
        BucketConfig("Equities", w3, mean, vol),
    )


def test_default_split_example():
    alloc = initial_allocation(500_000, DEFAULT_BUCKET_CONFIGS)
    assert (alloc.bucket1, alloc.bucket2, alloc.bucket3) == (75_000, 175_000, 250_000)


@pytest.mark.parametrize("capital", [0, 1, 999, 123_457, 500_000, 1_000_003])
@pytest.mark.parametrize(
    "weights", [(15, 35, 50), (1, 1, 1), (10, 20, 30), (33, 33, 34), (0, 50, 50), (7, 0, 93)]
)
def test_allocation_sums_to_capital(capital, weights):
    alloc = initial_allocation(capital, _buckets(*weights))
    assert alloc.bucket1 + alloc.bucket2 + alloc.bucket3 == capital
    assert min(alloc.as_tuple()) >= 0


def test_weights_are_normalized():
    # weights that do not add up to 100 split the same way as their normalized form
    alloc = initial_allocation(300_000, _buckets(1, 1, 1))
    assert alloc.as_tuple() == (100_000, 100_000, 100_000)


def test_zero_total_weight_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        initial_allocation(100_000, _buckets(0, 0, 0))


def test_bucket_count_is_enforced():
    with pytest.raises(ConfigurationError):
        initial_allocation(100_000, DEFAULT_BUCKET_CONFIGS[:2])


def test_negative_volatility_rejected():
    with pytest.raises(ConfigurationError):
        initial_allocation(100_000, _buckets(1, 1, 1, vol=-0.1))


@pytest.mark.parametrize(
    "capital, withdrawal, expected",
    [(500_000, 24_000, 20), (100_000, 30_000, 3), (100_000, 0, math.inf), (100_000, -5, math.inf)],
)
def test_years_of_coverage(capital, withdrawal, expected):
    assert years_of_coverage(capital, withdrawal) == expected


def test_bucket_coverage_years_is_fractional():
    assert bucket_coverage_years(75_000, 24_000) == pytest.approx(3.125)
    assert bucket_coverage_years(75_000, 0) == math.inf


def test_withdrawal_rate():
    assert withdrawal_rate(RetirementInput(500_000, 65, 24_000)) == pytest.approx(4.8)
    assert withdrawal_rate(RetirementInput(0, 65, 24_000)) == math.inf


def test_box_muller_at_unit_radius_is_zero():
    assert box_muller(1.0, 0.3) == pytest.approx(0.0)


def test_zero_volatility_returns_are_exact():
    returns = generate_returns(_buckets(1, 1, 1, mean=0.03), 10, np.random.default_rng(1))
    assert returns.shape == (10, 3)
    assert np.all(returns == 0.03)


def test_returns_reproducible_from_seed():
    a = generate_returns(DEFAULT_BUCKET_CONFIGS, 30, np.random.default_rng(42))
    b = generate_returns(DEFAULT_BUCKET_CONFIGS, 30, np.random.default_rng(42))
    c = generate_returns(DEFAULT_BUCKET_CONFIGS, 30, np.random.default_rng(43))
    assert np.array_equal(a, b)
    assert not np.array_equal(a, c)


def test_return_distribution_matches_parameters():
    rng = np.random.default_rng(7)
    draws = np.array([generate_return(0.07, 0.18, rng) for _ in range(20_000)])
    assert draws.mean() == pytest.approx(0.07, abs=0.01)
    assert draws.std() == pytest.approx(0.18, abs=0.01)
    # returns are not clipped
    assert draws.min() < -0.3
