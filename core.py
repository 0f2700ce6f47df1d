"""Core data model and building blocks for bucket retirement simulations."""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Sequence

import numpy as np
from numba import njit


logger = logging.getLogger(__name__)


CONFIG_FILE = "config.json"

DEFAULT_NUMBER_OF_SIMULATIONS = 1000
DEFAULT_LIFE_EXPECTANCY = 95
DEFAULT_TARGET_SUCCESS_RATE = 95.0


class ConfigurationError(ValueError):
    """Raised when planner inputs cannot describe a valid simulation."""


def parse_percent(val: str) -> float:
    """Convert a percentage string like '10%' to a float 0.10."""

    try:
        pct = float(val.strip().rstrip("%")) / 100
    except ValueError as exc:
        raise ValueError(f"Invalid percentage: {val!r}") from exc
    if not 0 <= pct <= 1:
        raise ValueError("Percentage must be between 0% and 100%")
    return pct


def parse_dollars(val: str) -> float:
    """Convert a currency string like '$1,234' to a float 1234.0."""

    try:
        amt = float(val.replace("$", "").replace(",", "").strip())
    except ValueError as exc:
        raise ValueError(f"Invalid dollar amount: {val!r}") from exc
    if amt < 0:
        raise ValueError("Dollar amount cannot be negative")
    return amt


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (not to even)."""
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class BucketConfig:
    name: str
    weight: float  # 0-100, normalized wherever used
    expected_return: float  # annual, decimal
    volatility: float  # annual standard deviation, decimal
    color: str = "#64748b"


# Liquidity covers the next years of withdrawals, bonds the medium term and
# equities carry long-term growth.
DEFAULT_BUCKET_CONFIGS: tuple[BucketConfig, ...] = (
    BucketConfig("Liquidity", 15, 0.02, 0.005, "#22c55e"),
    BucketConfig("Bonds", 35, 0.04, 0.06, "#3b82f6"),
    BucketConfig("Equities", 50, 0.07, 0.18, "#8b5cf6"),
)


@dataclass(frozen=True)
class BucketValues:
    """Three monetary amounts, one per bucket."""

    bucket1: float = 0.0
    bucket2: float = 0.0
    bucket3: float = 0.0

    @property
    def total(self) -> float:
        return self.bucket1 + self.bucket2 + self.bucket3

    def get(self, bucket: int) -> float:
        return self.as_tuple()[bucket - 1]

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.bucket1, self.bucket2, self.bucket3)

    def with_bucket(self, bucket: int, value: float):
        return replace(self, **{f"bucket{bucket}": value})


@dataclass(frozen=True)
class BucketAllocation(BucketValues):
    """Live market value held in each bucket."""


@dataclass(frozen=True)
class BucketCostBasis(BucketValues):
    """Principal (non-gain) portion of each bucket's value."""


@dataclass(frozen=True)
class TwoPhaseWithdrawal:
    enabled: bool
    phase1_withdrawal: float
    transition_age: int
    phase2_withdrawal: float


@dataclass(frozen=True)
class RetirementInput:
    total_capital: float
    age: int
    annual_withdrawal: float
    life_expectancy: int = DEFAULT_LIFE_EXPECTANCY

    @property
    def years(self) -> int:
        return self.life_expectancy - self.age


@dataclass(frozen=True)
class SimulationOptions:
    custom_buckets: tuple[BucketConfig, ...] = DEFAULT_BUCKET_CONFIGS
    inflation_enabled: bool = True
    inflation_rate: float = 0.02
    avoid_loss_realization: bool = True
    two_phase_withdrawal: Optional[TwoPhaseWithdrawal] = None

    def with_phase1_withdrawal(self, amount: float) -> "SimulationOptions":
        """Start an enabled two-phase plan at ``amount``; otherwise unchanged."""
        tp = self.two_phase_withdrawal
        if tp is None or not tp.enabled:
            return self
        return replace(self, two_phase_withdrawal=replace(tp, phase1_withdrawal=amount))


class CalculationMode(str, Enum):
    STANDARD = "standard"
    OPTIMAL_WITHDRAWAL = "optimal_withdrawal"
    REQUIRED_CAPITAL = "required_capital"


def validate_buckets(buckets: Sequence[BucketConfig]) -> None:
    """Raise ConfigurationError unless there are three usable bucket configs."""

    if len(buckets) != 3:
        raise ConfigurationError(f"Exactly three buckets are required, got {len(buckets)}")
    for bucket in buckets:
        if bucket.weight < 0:
            raise ConfigurationError(f"Bucket {bucket.name!r} has a negative weight")
        if bucket.volatility < 0:
            raise ConfigurationError(f"Bucket {bucket.name!r} has a negative volatility")
    if sum(b.weight for b in buckets) <= 0:
        raise ConfigurationError("Total bucket weight must be positive")


def validate_input(retirement_input: RetirementInput) -> None:
    if retirement_input.total_capital < 0:
        raise ConfigurationError("Total capital cannot be negative")
    if retirement_input.annual_withdrawal < 0:
        raise ConfigurationError("Annual withdrawal cannot be negative")
    if retirement_input.age < 0:
        raise ConfigurationError("Age must be non-negative")
    if retirement_input.life_expectancy <= retirement_input.age:
        raise ConfigurationError("Life expectancy must be greater than current age")


def initial_allocation(
    capital: float, bucket_configs: Sequence[BucketConfig] = DEFAULT_BUCKET_CONFIGS
) -> BucketAllocation:
    """
    Split ``capital`` across the three buckets by normalized weight.

    Buckets 1 and 2 are rounded to whole currency units and bucket 3 takes
    the remainder, so the three values always add up to ``capital``.
    """
    validate_buckets(bucket_configs)
    total_weight = sum(b.weight for b in bucket_configs)

    bucket1 = round_half_up(capital * (bucket_configs[0].weight / total_weight))
    bucket2 = round_half_up(capital * (bucket_configs[1].weight / total_weight))
    bucket3 = capital - bucket1 - bucket2

    return BucketAllocation(
        bucket1=max(0, bucket1),
        bucket2=max(0, bucket2),
        bucket3=max(0, bucket3),
    )


def withdrawal_rate(retirement_input: RetirementInput) -> float:
    """Annual withdrawal as a percentage of starting capital."""
    if retirement_input.total_capital <= 0:
        return math.inf
    return retirement_input.annual_withdrawal / retirement_input.total_capital * 100


def years_of_coverage(capital: float, annual_withdrawal: float) -> float:
    """Whole years ``capital`` pays for without any growth."""
    if annual_withdrawal <= 0:
        return math.inf
    return math.floor(capital / annual_withdrawal)


def bucket_coverage_years(value: float, annual_withdrawal: float) -> float:
    if annual_withdrawal <= 0:
        return math.inf
    return value / annual_withdrawal


@njit(cache=True)
def box_muller(u1: float, u2: float) -> float:
    """Standard normal variate from two uniforms; ``u1`` must be in (0, 1]."""
    return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)


@njit(cache=True)
def _returns_from_uniforms(
    means: np.ndarray, vols: np.ndarray, uniforms: np.ndarray
) -> np.ndarray:
    """JIT-compiled kernel turning (years, 3, 2) uniforms into (years, 3) returns."""
    n_years = uniforms.shape[0]
    out = np.empty((n_years, 3))
    for y in range(n_years):
        for b in range(3):
            z = box_muller(uniforms[y, b, 0], uniforms[y, b, 1])
            out[y, b] = means[b] + vols[b] * z
    return out


def draw_uniforms(rng: np.random.Generator, n_years: int) -> np.ndarray:
    """Draw the (years, 3, 2) uniform pairs one trial consumes."""
    uniforms = rng.random((n_years, 3, 2))
    # Generator.random() is [0, 1); flip the first draw so log() stays finite
    uniforms[:, :, 0] = 1.0 - uniforms[:, :, 0]
    return uniforms


def _bucket_parameters(bucket_configs: Sequence[BucketConfig]) -> tuple[np.ndarray, np.ndarray]:
    means = np.array([b.expected_return for b in bucket_configs], dtype=np.float64)
    vols = np.array([b.volatility for b in bucket_configs], dtype=np.float64)
    return means, vols


def generate_returns(
    bucket_configs: Sequence[BucketConfig], n_years: int, rng: np.random.Generator
) -> np.ndarray:
    """
    Generate independent normal annual returns for every bucket and year.

    Returns an array of shape (n_years, 3). Returns are not clipped; the
    zero floor only applies once a return is multiplied onto a balance.
    """
    means, vols = _bucket_parameters(bucket_configs)
    return _returns_from_uniforms(means, vols, draw_uniforms(rng, n_years))


def generate_return(expected_return: float, volatility: float, rng: np.random.Generator) -> float:
    """Draw a single annual return."""
    u1 = 1.0 - rng.random()
    u2 = rng.random()
    return expected_return + volatility * box_muller(u1, u2)


def _parse_rate(val: Any) -> float:
    if isinstance(val, str):
        return parse_percent(val)
    return float(val)


def _parse_amount(val: Any) -> float:
    if isinstance(val, str):
        return parse_dollars(val)
    amt = float(val)
    if amt < 0:
        raise ValueError("Dollar amount cannot be negative")
    return amt


@dataclass(frozen=True)
class PlannerConfig:
    retirement_input: RetirementInput = field(
        default_factory=lambda: RetirementInput(500_000, 65, 24_000)
    )
    options: SimulationOptions = field(default_factory=SimulationOptions)
    number_of_simulations: int = DEFAULT_NUMBER_OF_SIMULATIONS
    seed: Optional[int] = None
    calculation_mode: CalculationMode = CalculationMode.STANDARD
    target_success_rate: float = DEFAULT_TARGET_SUCCESS_RATE

    def __post_init__(self) -> None:
        validate_input(self.retirement_input)
        validate_buckets(self.options.custom_buckets)
        if self.number_of_simulations <= 0:
            raise ConfigurationError("Number of simulations must be positive")
        if not 0 < self.target_success_rate <= 100:
            raise ConfigurationError("Target success rate must be between 0 and 100")

    @classmethod
    def from_dict(cls, data: dict) -> "PlannerConfig":
        """Build a config from the JSON layout used by ``config.json``."""

        general = data.get("general", {})
        user = data.get("user", {})
        defaults = cls()

        try:
            retirement_input = RetirementInput(
                total_capital=_parse_amount(
                    user.get("total_capital", defaults.retirement_input.total_capital)
                ),
                age=int(user.get("age", defaults.retirement_input.age)),
                annual_withdrawal=_parse_amount(
                    user.get("annual_withdrawal", defaults.retirement_input.annual_withdrawal)
                ),
                life_expectancy=int(
                    user.get("life_expectancy", defaults.retirement_input.life_expectancy)
                ),
            )

            buckets = defaults.options.custom_buckets
            if "buckets" in data:
                buckets = tuple(
                    BucketConfig(
                        name=str(b["name"]),
                        weight=float(b["weight"]),
                        expected_return=float(b["expected_return"]),
                        volatility=float(b["volatility"]),
                        color=str(b.get("color", "#64748b")),
                    )
                    for b in data["buckets"]
                )

            two_phase = None
            tp = user.get("two_phase_withdrawal")
            if tp:
                two_phase = TwoPhaseWithdrawal(
                    enabled=bool(tp.get("enabled", True)),
                    phase1_withdrawal=_parse_amount(
                        tp.get("phase1_withdrawal", retirement_input.annual_withdrawal)
                    ),
                    transition_age=int(tp["transition_age"]),
                    phase2_withdrawal=_parse_amount(tp["phase2_withdrawal"]),
                )

            options = SimulationOptions(
                custom_buckets=buckets,
                inflation_enabled=bool(
                    user.get("inflation_enabled", defaults.options.inflation_enabled)
                ),
                inflation_rate=_parse_rate(
                    user.get("inflation_rate", defaults.options.inflation_rate)
                ),
                avoid_loss_realization=bool(
                    user.get("avoid_loss_realization", defaults.options.avoid_loss_realization)
                ),
                two_phase_withdrawal=two_phase,
            )

            seed = general.get("seed")
            return cls(
                retirement_input=retirement_input,
                options=options,
                number_of_simulations=int(
                    general.get("number_of_simulations", defaults.number_of_simulations)
                ),
                seed=None if seed is None else int(seed),
                calculation_mode=CalculationMode(
                    general.get("calculation_mode", defaults.calculation_mode.value)
                ),
                target_success_rate=float(
                    general.get("target_success_rate", defaults.target_success_rate)
                ),
            )
        except ConfigurationError:
            raise
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def load_config(path: str = CONFIG_FILE) -> PlannerConfig:
    """Load a planner configuration, falling back to defaults when absent."""

    if os.path.exists(path):
        with open(path) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as exc:
                raise ConfigurationError(f"Invalid JSON in {path}: {exc}") from exc
        logger.debug("Loaded configuration from %s", path)
        return PlannerConfig.from_dict(data)
    logger.debug("No configuration at %s, using defaults", path)
    return PlannerConfig()
