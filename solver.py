"""
Reverse calculations: sustainable withdrawal and required capital.

Both solvers bisect over a closed-form success-rate heuristic anchored on
the 4% rule (about 95% success over 30 years), not over the Monte Carlo
engine. The two models answer the same question independently and can
disagree; ``compare_success_rates`` reports how far apart they are.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from core import (
    CalculationMode,
    DEFAULT_TARGET_SUCCESS_RATE,
    PlannerConfig,
    round_half_up,
)


logger = logging.getLogger(__name__)

BASE_RATE = 4.0
BASE_YEARS = 30
BASE_SUCCESS = 95.0
RATE_PENALTY = 12.0
YEARS_PENALTY = 0.5
RATE_BONUS = 5.0
YEARS_BONUS = 0.3
MIN_SUCCESS = 5.0
MAX_SUCCESS = 99.9

ITERATIONS = 15
DIVERGENCE_TOLERANCE = 5.0


@dataclass(frozen=True)
class OptimalWithdrawalResult:
    withdrawal: float
    success_rate: float
    withdrawal_rate: float


@dataclass(frozen=True)
class RequiredCapitalResult:
    capital: float
    success_rate: float
    withdrawal_rate: float


@dataclass(frozen=True)
class SuccessRateComparison:
    heuristic: float
    simulated: float
    tolerance: float

    @property
    def difference(self) -> float:
        return self.simulated - self.heuristic

    @property
    def diverges(self) -> bool:
        return abs(self.difference) > self.tolerance


def estimate_success_rate(capital: float, withdrawal: float, years: float) -> float:
    """Heuristic success rate in percent, clamped to [5, 99.9]."""

    if capital <= 0:
        return MIN_SUCCESS
    rate = withdrawal / capital * 100

    rate_penalty = max(0.0, (rate - BASE_RATE) * RATE_PENALTY)
    years_penalty = max(0.0, (years - BASE_YEARS) * YEARS_PENALTY)
    rate_bonus = max(0.0, (BASE_RATE - rate) * RATE_BONUS)
    years_bonus = max(0.0, (BASE_YEARS - years) * YEARS_BONUS)

    success = BASE_SUCCESS - rate_penalty - years_penalty + rate_bonus + years_bonus
    return min(MAX_SUCCESS, max(MIN_SUCCESS, success))


def calculate_optimal_withdrawal(
    capital: float,
    age: int,
    life_expectancy: int,
    target_success_rate: float = DEFAULT_TARGET_SUCCESS_RATE,
) -> OptimalWithdrawalResult:
    """
    Binary search for the largest withdrawal that still meets the target.

    Searches between 2% and 10% of capital. If even 2% misses the target,
    2% is returned with its estimate.
    """
    years = life_expectancy - age
    low = capital * 0.02
    high = capital * 0.10
    best = low
    best_rate = estimate_success_rate(capital, low, years)

    for _ in range(ITERATIONS):
        mid = (low + high) / 2
        estimate = estimate_success_rate(capital, mid, years)
        if estimate >= target_success_rate:
            best, best_rate = mid, estimate
            low = mid
        else:
            high = mid

    result = OptimalWithdrawalResult(
        withdrawal=float(round_half_up(best / 100) * 100),
        success_rate=best_rate,
        withdrawal_rate=best / capital * 100 if capital > 0 else 0.0,
    )
    logger.info(
        "Optimal withdrawal for %.0f over %d years: %.0f (%.2f%%)",
        capital,
        years,
        result.withdrawal,
        result.withdrawal_rate,
    )
    return result


def calculate_required_capital(
    desired_withdrawal: float,
    age: int,
    life_expectancy: int,
    target_success_rate: float = DEFAULT_TARGET_SUCCESS_RATE,
) -> RequiredCapitalResult:
    """Binary search for the smallest capital (15x to 40x the withdrawal) meeting the target."""
    years = life_expectancy - age
    low = desired_withdrawal * 15
    high = desired_withdrawal * 40
    best = high
    best_rate = estimate_success_rate(high, desired_withdrawal, years)

    for _ in range(ITERATIONS):
        mid = (low + high) / 2
        estimate = estimate_success_rate(mid, desired_withdrawal, years)
        if estimate >= target_success_rate:
            best, best_rate = mid, estimate
            high = mid
        else:
            low = mid

    result = RequiredCapitalResult(
        capital=float(round_half_up(best / 1000) * 1000),
        success_rate=best_rate,
        withdrawal_rate=desired_withdrawal / best * 100 if best > 0 else 0.0,
    )
    logger.info(
        "Required capital for %.0f/year over %d years: %.0f",
        desired_withdrawal,
        years,
        result.capital,
    )
    return result


def apply_reverse_calculation(config: PlannerConfig) -> PlannerConfig:
    """Feed the solver result for ``config.calculation_mode`` back into the inputs."""

    inp = config.retirement_input
    if config.calculation_mode is CalculationMode.OPTIMAL_WITHDRAWAL:
        result = calculate_optimal_withdrawal(
            inp.total_capital, inp.age, inp.life_expectancy, config.target_success_rate
        )
        return replace(
            config,
            retirement_input=replace(inp, annual_withdrawal=result.withdrawal),
            options=config.options.with_phase1_withdrawal(result.withdrawal),
        )
    if config.calculation_mode is CalculationMode.REQUIRED_CAPITAL:
        result = calculate_required_capital(
            inp.annual_withdrawal, inp.age, inp.life_expectancy, config.target_success_rate
        )
        return replace(
            config,
            retirement_input=replace(inp, total_capital=result.capital),
            options=config.options.with_phase1_withdrawal(inp.annual_withdrawal),
        )
    return config


def compare_success_rates(
    heuristic: float, simulated: float, tolerance: float = DIVERGENCE_TOLERANCE
) -> SuccessRateComparison:
    comparison = SuccessRateComparison(heuristic, simulated, tolerance)
    if comparison.diverges:
        logger.warning(
            "Heuristic success rate %.1f%% and simulated %.1f%% differ by %.1f points",
            heuristic,
            simulated,
            abs(comparison.difference),
        )
    return comparison
