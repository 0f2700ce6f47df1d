"""Command-line front end for the three-bucket retirement simulation."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from typing import Optional, Sequence

from core import (
    CONFIG_FILE,
    CalculationMode,
    ConfigurationError,
    PlannerConfig,
    initial_allocation,
    load_config,
    parse_dollars,
    parse_percent,
    withdrawal_rate,
    years_of_coverage,
)
from simulation import MonteCarloSummary, SimulationResult, run_monte_carlo_simulation
from solver import apply_reverse_calculation, compare_success_rates, estimate_success_rate


logger = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Monte Carlo projection of a three-bucket retirement withdrawal strategy."
    )
    parser.add_argument("--config", default=CONFIG_FILE, help="JSON configuration file")
    parser.add_argument("--capital", type=parse_dollars, help="Total starting capital, e.g. $500,000")
    parser.add_argument("--withdrawal", type=parse_dollars, help="Annual withdrawal, e.g. 24000")
    parser.add_argument("--age", type=int, help="Age at the start of the simulation")
    parser.add_argument("--life-expectancy", type=int, help="Age the plan has to last to")
    parser.add_argument("--inflation", type=parse_percent, help="Annual inflation rate, e.g. 2%%")
    parser.add_argument("--no-inflation", action="store_true", help="Keep withdrawals flat")
    parser.add_argument(
        "--allow-loss-realization",
        action="store_true",
        help="Rebalance even when selling would realize a loss",
    )
    parser.add_argument("--simulations", type=int, help="Number of Monte Carlo trials")
    parser.add_argument("--seed", type=int, help="Seed for reproducible runs")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in CalculationMode],
        help="Solve for the withdrawal or the capital before simulating",
    )
    parser.add_argument("--target", type=float, help="Target success rate in percent")
    parser.add_argument("--show-years", action="store_true", help="Print the sample trajectory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PlannerConfig:
    """Overlay command-line overrides on the loaded configuration."""
    cfg = load_config(args.config)
    inp = cfg.retirement_input
    inp = replace(
        inp,
        total_capital=inp.total_capital if args.capital is None else args.capital,
        annual_withdrawal=inp.annual_withdrawal if args.withdrawal is None else args.withdrawal,
        age=inp.age if args.age is None else args.age,
        life_expectancy=inp.life_expectancy if args.life_expectancy is None else args.life_expectancy,
    )
    options = cfg.options
    if args.withdrawal is not None:
        options = options.with_phase1_withdrawal(args.withdrawal)
    if args.inflation is not None:
        options = replace(options, inflation_rate=args.inflation)
    if args.no_inflation:
        options = replace(options, inflation_enabled=False)
    if args.allow_loss_realization:
        options = replace(options, avoid_loss_realization=False)

    return replace(
        cfg,
        retirement_input=inp,
        options=options,
        number_of_simulations=cfg.number_of_simulations if args.simulations is None else args.simulations,
        seed=cfg.seed if args.seed is None else args.seed,
        calculation_mode=cfg.calculation_mode if args.mode is None else CalculationMode(args.mode),
        target_success_rate=cfg.target_success_rate if args.target is None else args.target,
    )


def format_summary(cfg: PlannerConfig, summary: MonteCarloSummary, heuristic: float) -> list[str]:
    inp = cfg.retirement_input
    pct = summary.percentiles
    lines = [
        f"Capital: ${inp.total_capital:,.0f}",
        f"Withdrawal: ${inp.annual_withdrawal:,.0f} ({withdrawal_rate(inp):.2f}%)",
        f"Years without growth: {years_of_coverage(inp.total_capital, inp.annual_withdrawal)}",
        f"Success rate: {summary.success_rate:.1f}% of {summary.simulations} simulations",
        f"Median final value: ${summary.median_final_value:,.0f}",
        f"Worst case: ${summary.worst_case:,.0f}  Best case: ${summary.best_case:,.0f}",
        f"Percentiles: p10 ${pct.p10:,.0f}, p25 ${pct.p25:,.0f}, p50 ${pct.p50:,.0f}, "
        f"p75 ${pct.p75:,.0f}, p90 ${pct.p90:,.0f}",
        f"Average years lasted: {summary.average_years_lasted:.1f}",
    ]
    comparison = compare_success_rates(heuristic, summary.success_rate)
    if comparison.diverges:
        lines.append(
            f"Note: the rule-of-thumb estimate ({heuristic:.1f}%) differs from the "
            f"simulation by {abs(comparison.difference):.1f} points."
        )
    return lines


def format_years(result: SimulationResult) -> list[str]:
    lines = []
    for y in result.years:
        b = y.buckets
        lines.append(
            f"{y.year:>3} age {y.age:>3}  total ${y.total_value:>12,}  "
            f"withdrawal ${y.withdrawal:>9,}  "
            f"[{b.bucket1:,.0f} / {b.bucket2:,.0f} / {b.bucket3:,.0f}]  "
            f"{y.rebalance_action.action}"
        )
    if result.ran_out_of_money:
        lines.append(f"Sample trial ran out of money in year {result.year_ran_out}.")
    return lines


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    try:
        cfg = apply_reverse_calculation(build_config(args))
    except ConfigurationError as exc:
        print(f"Input error: {exc}", file=sys.stderr)
        return 2

    logger.debug("Effective configuration: %s", cfg)
    inp = cfg.retirement_input
    allocation = initial_allocation(inp.total_capital, cfg.options.custom_buckets)
    summary, sample = run_monte_carlo_simulation(
        allocation,
        inp.annual_withdrawal,
        inp.age,
        inp.years,
        cfg.number_of_simulations,
        cfg.options,
        seed=cfg.seed,
    )
    heuristic = estimate_success_rate(inp.total_capital, inp.annual_withdrawal, inp.years)

    print("\n".join(format_summary(cfg, summary, heuristic)))
    if args.show_years:
        print("\n".join(format_years(sample)))
    return 0


if __name__ == "__main__":
    sys.exit(main())
