"""Single-trial and Monte Carlo simulation of the three-bucket strategy."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from numba import njit, prange

from core import (
    BucketAllocation,
    BucketConfig,
    BucketCostBasis,
    ConfigurationError,
    DEFAULT_NUMBER_OF_SIMULATIONS,
    SimulationOptions,
    generate_returns,
    round_half_up,
    validate_buckets,
)
from rebalance import (
    RebalanceRecommendation,
    get_rebalance_recommendation,
    max_gain_sell_amount,
    rebalance_transfer_jit,
    would_realize_loss_jit,
)


logger = logging.getLogger(__name__)

PERCENTILES = (10, 25, 50, 75, 90)


@dataclass(frozen=True)
class SimulationYear:
    year: int
    age: int
    buckets: BucketAllocation
    total_value: int
    withdrawal: int
    returns: Tuple[float, float, float]
    rebalance_action: RebalanceRecommendation
    cost_basis: BucketCostBasis


@dataclass(frozen=True)
class SimulationResult:
    years: Tuple[SimulationYear, ...]
    final_value: float
    ran_out_of_money: bool
    year_ran_out: Optional[int] = None


@dataclass(frozen=True)
class Percentiles:
    p10: float
    p25: float
    p50: float
    p75: float
    p90: float


@dataclass(frozen=True)
class MonteCarloSummary:
    simulations: int
    success_rate: float
    median_final_value: float
    worst_case: float
    best_case: float
    average_years_lasted: float
    percentiles: Percentiles


@dataclass(frozen=True)
class TrialState:
    """Working state of one trial between two simulated years."""

    allocation: BucketAllocation
    cost_basis: BucketCostBasis
    ran_out_of_money: bool = False
    year_ran_out: Optional[int] = None

    @classmethod
    def start(cls, initial_allocation: BucketAllocation) -> "TrialState":
        # Initial holdings are all principal
        values = tuple(float(v) for v in initial_allocation.as_tuple())
        return cls(allocation=BucketAllocation(*values), cost_basis=BucketCostBasis(*values))


def starting_withdrawal(annual_withdrawal: float, options: SimulationOptions) -> float:
    tp = options.two_phase_withdrawal
    if tp is not None and tp.enabled:
        return tp.phase1_withdrawal
    return annual_withdrawal


def withdrawal_for_year(
    previous: float, year_index: int, age: int, options: SimulationOptions
) -> float:
    """
    Size the withdrawal for year ``year_index`` (0-based) at ``age``.

    At the two-phase transition age the phase 2 amount replaces the running
    withdrawal, carrying the inflation phase 1 accrued since the start.
    """
    tp = options.two_phase_withdrawal
    if tp is not None and tp.enabled and age == tp.transition_age:
        if options.inflation_enabled and year_index > 0:
            return tp.phase2_withdrawal * (1 + options.inflation_rate) ** year_index
        return tp.phase2_withdrawal
    if year_index > 0 and options.inflation_enabled:
        return previous * (1 + options.inflation_rate)
    return previous


def withdrawal_schedule(
    annual_withdrawal: float, start_age: int, years: int, options: SimulationOptions
) -> np.ndarray:
    """Withdrawal for every simulated year; identical across trials."""
    schedule = np.empty(years, dtype=np.float64)
    current = starting_withdrawal(annual_withdrawal, options)
    for i in range(years):
        current = withdrawal_for_year(current, i, start_age + i + 1, options)
        schedule[i] = current
    return schedule


@njit(cache=True)
def _withdraw_jit(
    b1: float, b2: float, b3: float, c1: float, c2: float, c3: float, w: float
) -> Tuple[float, float, float, float, float, float, bool]:
    """
    JIT-compiled withdrawal: bucket 1 first, then 2, then 3.

    Returns the new balances, cost bases and whether the portfolio is
    depleted.
    """
    if b1 >= w:
        new_b1 = b1 - w
        if b1 > 0:
            c1 = max(0.0, c1 * (new_b1 / b1))
        return new_b1, b2, b3, c1, c2, c3, False
    if b1 + b2 >= w:
        remaining = w - b1
        new_b2 = b2 - remaining
        if b2 > 0:
            c2 = max(0.0, c2 * (new_b2 / b2))
        return 0.0, new_b2, b3, 0.0, c2, c3, False
    if b1 + b2 + b3 >= w:
        remaining = w - b1 - b2
        new_b3 = b3 - remaining
        if b3 > 0:
            c3 = max(0.0, c3 * (new_b3 / b3))
        return 0.0, 0.0, new_b3, 0.0, 0.0, c3, False
    return 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, True


@njit(cache=True)
def _transfer_jit(
    from_value: float,
    from_cost: float,
    to_value: float,
    to_cost: float,
    amount: float,
    avoid_loss: bool,
) -> Tuple[float, float, float, float, float]:
    """
    JIT-compiled transfer between two buckets.

    The amount is clamped to the source balance and, with loss avoidance,
    to the source's unrealized gain. Returns (from_value, from_cost,
    to_value, to_cost, moved).
    """
    amount = min(amount, from_value)
    if avoid_loss and would_realize_loss_jit(from_value, from_cost):
        amount = min(amount, max_gain_sell_amount(from_value, from_cost))
    if amount <= 0:
        return from_value, from_cost, to_value, to_cost, 0.0

    new_from = from_value - amount
    if from_value > 0:
        from_cost = from_cost * (new_from / from_value)
    # the destination books the transfer as a fresh purchase
    return new_from, from_cost, to_value + amount, to_cost + amount, amount


def execute_transfer(
    allocation: BucketAllocation,
    cost_basis: BucketCostBasis,
    recommendation: RebalanceRecommendation,
    avoid_loss_realization: bool,
) -> Tuple[BucketAllocation, BucketCostBasis, float]:
    """Apply a recommended transfer, returning the new state and the amount moved."""
    if not recommendation.is_transfer:
        return allocation, cost_basis, 0.0

    src, dst = recommendation.from_bucket, recommendation.to_bucket
    from_value, from_cost, to_value, to_cost, moved = _transfer_jit(
        float(allocation.get(src)),
        float(cost_basis.get(src)),
        float(allocation.get(dst)),
        float(cost_basis.get(dst)),
        float(recommendation.amount),
        avoid_loss_realization,
    )
    if moved <= 0:
        return allocation, cost_basis, 0.0

    allocation = allocation.with_bucket(src, from_value).with_bucket(dst, to_value)
    cost_basis = cost_basis.with_bucket(src, from_cost).with_bucket(dst, to_cost)
    return allocation, cost_basis, float(moved)


def advance_year(
    state: TrialState,
    year_index: int,
    start_age: int,
    withdrawal: float,
    returns: Sequence[float],
    options: SimulationOptions,
) -> Tuple[TrialState, SimulationYear]:
    """Pure year transition: returns, withdrawal, rebalance, snapshot."""

    year = year_index + 1
    r1, r2, r3 = (float(r) for r in returns)
    b1, b2, b3 = state.allocation.as_tuple()
    c1, c2, c3 = (float(c) for c in state.cost_basis.as_tuple())

    b1 = max(0.0, b1 * (1 + r1))
    b2 = max(0.0, b2 * (1 + r2))
    b3 = max(0.0, b3 * (1 + r3))

    b1, b2, b3, c1, c2, c3, depleted = _withdraw_jit(b1, b2, b3, c1, c2, c3, float(withdrawal))
    allocation = BucketAllocation(float(b1), float(b2), float(b3))
    cost_basis = BucketCostBasis(float(c1), float(c2), float(c3))

    ran_out = state.ran_out_of_money
    year_ran_out = state.year_ran_out
    if depleted and not ran_out:
        ran_out = True
        year_ran_out = year
        logger.debug("Portfolio depleted in year %d", year)

    recommendation = get_rebalance_recommendation(
        allocation,
        withdrawal,
        options.custom_buckets,
        cost_basis if options.avoid_loss_realization else None,
        options.avoid_loss_realization,
    )
    allocation, cost_basis, _ = execute_transfer(
        allocation, cost_basis, recommendation, options.avoid_loss_realization
    )

    snapshot = SimulationYear(
        year=year,
        age=start_age + year,
        buckets=allocation,
        total_value=round_half_up(allocation.total),
        withdrawal=round_half_up(withdrawal),
        returns=(r1, r2, r3),
        rebalance_action=recommendation,
        cost_basis=cost_basis,
    )
    new_state = TrialState(allocation, cost_basis, ran_out, year_ran_out)
    return new_state, snapshot


def simulate_trajectory(
    initial_allocation: BucketAllocation,
    withdrawals: Sequence[float],
    start_age: int,
    returns: np.ndarray,
    options: SimulationOptions,
) -> SimulationResult:
    """Run one trial over pre-drawn ``returns`` of shape (years, 3)."""
    state = TrialState.start(initial_allocation)
    years = []
    for i, withdrawal in enumerate(withdrawals):
        state, snapshot = advance_year(state, i, start_age, withdrawal, returns[i], options)
        years.append(snapshot)

    final_value = float(years[-1].total_value) if years else 0.0
    return SimulationResult(
        years=tuple(years),
        final_value=final_value,
        ran_out_of_money=state.ran_out_of_money,
        year_ran_out=state.year_ran_out,
    )


def run_single_simulation(
    initial_allocation: BucketAllocation,
    annual_withdrawal: float,
    start_age: int,
    years: int,
    options: Optional[SimulationOptions] = None,
    rng: Optional[np.random.Generator] = None,
) -> SimulationResult:
    """Simulate one trial year by year and return its full trajectory."""
    options = options or SimulationOptions()
    validate_buckets(options.custom_buckets)
    rng = rng if rng is not None else np.random.default_rng()

    returns = generate_returns(options.custom_buckets, years, rng)
    withdrawals = withdrawal_schedule(annual_withdrawal, start_age, years, options)
    return simulate_trajectory(initial_allocation, withdrawals, start_age, returns, options)


@njit(cache=True, parallel=True)
def _simulate_parallel(
    n_sims: int,
    n_years: int,
    initial: np.ndarray,  # (3,)
    withdrawals: np.ndarray,  # (n_years,)
    all_returns: np.ndarray,  # (n_sims, n_years, 3)
    avoid_loss: bool,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Parallelized trial kernel. Returns (final_values, years_lasted, ran_out)
    per trial.
    """
    final_values = np.zeros(n_sims)
    years_lasted = np.zeros(n_sims, dtype=np.int64)
    ran_out = np.zeros(n_sims, dtype=np.bool_)

    for sim in prange(n_sims):
        b1 = initial[0]
        b2 = initial[1]
        b3 = initial[2]
        c1 = b1
        c2 = b2
        c3 = b3
        depleted_year = 0
        total = b1 + b2 + b3

        for i in range(n_years):
            w = withdrawals[i]
            b1 = max(0.0, b1 * (1.0 + all_returns[sim, i, 0]))
            b2 = max(0.0, b2 * (1.0 + all_returns[sim, i, 1]))
            b3 = max(0.0, b3 * (1.0 + all_returns[sim, i, 2]))

            b1, b2, b3, c1, c2, c3, depleted = _withdraw_jit(b1, b2, b3, c1, c2, c3, w)
            if depleted and depleted_year == 0:
                depleted_year = i + 1

            src, dst, amount = rebalance_transfer_jit(b1, b2, b3, c1, c2, c3, w, avoid_loss)
            if src == 3 and dst == 1:
                b3, c3, b1, c1, _ = _transfer_jit(b3, c3, b1, c1, amount, avoid_loss)
            elif src == 2 and dst == 1:
                b2, c2, b1, c1, _ = _transfer_jit(b2, c2, b1, c1, amount, avoid_loss)
            elif src == 3 and dst == 2:
                b3, c3, b2, c2, _ = _transfer_jit(b3, c3, b2, c2, amount, avoid_loss)

            total = b1 + b2 + b3

        if n_years > 0:
            final_values[sim] = np.floor(total + 0.5)
        if depleted_year > 0:
            ran_out[sim] = True
            years_lasted[sim] = depleted_year
        else:
            years_lasted[sim] = n_years

    return final_values, years_lasted, ran_out


def get_percentile(sorted_values: np.ndarray, p: float) -> float:
    """Nearest-rank percentile of an ascending array."""
    n = len(sorted_values)
    index = math.ceil(n * (p / 100)) - 1
    index = min(max(0, index), n - 1)
    return float(sorted_values[index])


def summarize(final_values: np.ndarray, years_lasted: np.ndarray, ran_out: np.ndarray) -> MonteCarloSummary:
    n = len(final_values)
    ordered = np.sort(final_values)
    successes = int(n - np.count_nonzero(ran_out))
    pct = Percentiles(*(get_percentile(ordered, p) for p in PERCENTILES))
    return MonteCarloSummary(
        simulations=n,
        success_rate=successes / n * 100,
        median_final_value=pct.p50,
        worst_case=float(ordered[0]),
        best_case=float(ordered[-1]),
        average_years_lasted=float(np.mean(years_lasted)),
        percentiles=pct,
    )


def _draw_trial_returns(
    bucket_configs: Sequence[BucketConfig], n_years: int, n_sims: int, seed: Optional[int]
) -> np.ndarray:
    """Pre-draw every trial's returns, each from its own spawned stream."""
    children = np.random.SeedSequence(seed).spawn(n_sims)
    all_returns = np.empty((n_sims, n_years, 3), dtype=np.float64)
    for sim, child in enumerate(children):
        all_returns[sim] = generate_returns(bucket_configs, n_years, np.random.default_rng(child))
    return all_returns


def run_monte_carlo_simulation(
    initial_allocation: BucketAllocation,
    annual_withdrawal: float,
    start_age: int,
    years: int,
    num_simulations: int = DEFAULT_NUMBER_OF_SIMULATIONS,
    options: Optional[SimulationOptions] = None,
    seed: Optional[int] = None,
) -> Tuple[MonteCarloSummary, SimulationResult]:
    """
    Run ``num_simulations`` independent trials and aggregate their outcomes.

    Returns the summary plus the full trajectory of the first trial, which
    is illustrative only.
    """
    if num_simulations < 1:
        raise ConfigurationError("Number of simulations must be positive")
    if years < 0:
        raise ConfigurationError("Simulation horizon cannot be negative")
    options = options or SimulationOptions()
    validate_buckets(options.custom_buckets)

    logger.info(
        "Running %d trials over %d years (withdrawal %.0f, capital %.0f)",
        num_simulations,
        years,
        annual_withdrawal,
        initial_allocation.total,
    )

    withdrawals = withdrawal_schedule(annual_withdrawal, start_age, years, options)
    all_returns = _draw_trial_returns(options.custom_buckets, years, num_simulations, seed)

    final_values, years_lasted, ran_out = _simulate_parallel(
        n_sims=num_simulations,
        n_years=years,
        initial=np.array(initial_allocation.as_tuple(), dtype=np.float64),
        withdrawals=withdrawals,
        all_returns=all_returns,
        avoid_loss=options.avoid_loss_realization,
    )
    summary = summarize(final_values, years_lasted, ran_out)

    sample = simulate_trajectory(initial_allocation, withdrawals, start_age, all_returns[0], options)

    logger.info(
        "Success rate %.1f%%, median final value %.0f",
        summary.success_rate,
        summary.median_final_value,
    )
    return summary, sample


def generate_multiple_scenarios(
    initial_allocation: BucketAllocation,
    annual_withdrawal: float,
    start_age: int,
    years: int,
    count: int = 5,
    options: Optional[SimulationOptions] = None,
    seed: Optional[int] = None,
) -> list[SimulationResult]:
    """Independent single-trial trajectories for side-by-side comparison."""
    children = np.random.SeedSequence(seed).spawn(count)
    return [
        run_single_simulation(
            initial_allocation,
            annual_withdrawal,
            start_age,
            years,
            options,
            rng=np.random.default_rng(child),
        )
        for child in children
    ]
