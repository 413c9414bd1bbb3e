#!/usr/bin/env python3
"""
Phase Rotation Backtester - Command-Line Runner

Two commands:
    phase       Classify the reference instrument's current market phase
    backtest    Backtest the two-asset rotation strategy over a date range

EXECUTION
    python run_backtest.py phase
    python run_backtest.py backtest --start 2020-01-02 --end 2024-12-31 \\
        --cash 10000 --stock1 QQQ --stock2 SCHD
    python run_backtest.py backtest --start 2020-01-02 --end 2024-12-31 \\
        --stock1 QQQ --stock2 SCHD --config strategy.json

The optional --config JSON file may hold "allocation" and "maConfig"
objects keyed by phase name (bull, bear, reentry, momentum, momentum2).

OUTPUT ARTIFACTS
    outputs/
        {stock1}_{stock2}_daily.parquet     Daily snapshots
        {stock1}_{stock2}_monthly.parquet   Month-end snapshots
        {stock1}_{stock2}_yearly.parquet    Year-end snapshots
        reports/{stock1}_{stock2}_backtest.json
        reports/{stock1}_{stock2}_backtest.md
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from datetime import date
from pathlib import Path
from typing import Any, Dict, Tuple

from ma_rotation.backtest_engine import BacktestPipeline, BacktestRequest, format_backtest_report
from ma_rotation.config import (
    DEFAULT_ALLOCATION,
    DEFAULT_PHASE_RULES,
    REFERENCE_TICKER,
    AllocationTable,
    PhaseRules,
    parse_allocation,
    parse_phase_rules,
)
from ma_rotation.exceptions import BacktestError, InvalidRequestError
from ma_rotation.regime_detector import detect_current_phase, format_phase_report
from ma_rotation.report_generator import generate_all_reports


# =============================================================================
# CONSTANTS
# =============================================================================

VERSION: str = "1.0.0"
DEFAULT_STOCK1: str = "QQQ"
DEFAULT_STOCK2: str = "SCHD"
DEFAULT_CASH: float = 10000.0

OUTPUT_DIR = Path("outputs")


def print_section_header(title: str, char: str = "═") -> None:
    """Print a formatted section header."""
    width = 79
    print()
    print(char * width)
    print(f"  {title}")
    print(char * width)
    print()


def load_strategy_config(path: Path) -> Dict[str, Any]:
    """Read allocation / maConfig overrides from a JSON file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidRequestError(f"Could not read strategy config {path}: {e}") from e
    if not isinstance(data, dict):
        raise InvalidRequestError(f"Strategy config {path} must be a JSON object")
    return data


def resolve_strategy(overrides: Dict[str, Any]) -> Tuple[AllocationTable, PhaseRules]:
    """
    Apply "allocation" / "maConfig" overrides on top of the defaults.

    Raises:
        InvalidRequestError: a phase entry is not an object or holds an
            unknown condition or non-numeric weight
    """
    allocation: AllocationTable = DEFAULT_ALLOCATION
    rules: PhaseRules = DEFAULT_PHASE_RULES
    try:
        if "allocation" in overrides:
            allocation = parse_allocation(overrides["allocation"])
        if "maConfig" in overrides:
            rules = parse_phase_rules(overrides["maConfig"])
    except (TypeError, ValueError, AttributeError) as e:
        raise InvalidRequestError(f"Invalid strategy config: {e}") from e
    return allocation, rules


# =============================================================================
# COMMANDS
# =============================================================================

def run_phase(args: argparse.Namespace, logger: logging.Logger) -> int:
    """Print the current market phase of the reference instrument."""
    print_section_header(f"CURRENT PHASE: {args.reference}")

    lookup = detect_current_phase(ticker=args.reference)
    print(format_phase_report(lookup, args.reference))

    if args.json:
        print(json.dumps(lookup.to_dict(), indent=2, ensure_ascii=False))

    if not lookup.success:
        logger.warning(lookup.message)
        return 1
    return 0


def run_backtest_command(args: argparse.Namespace, logger: logging.Logger) -> int:
    """Run the rotation backtest and write reports."""
    print_section_header(f"PHASE ROTATION BACKTEST: {args.stock1} / {args.stock2}")

    allocation: AllocationTable = DEFAULT_ALLOCATION
    rules: PhaseRules = DEFAULT_PHASE_RULES
    if args.config:
        allocation, rules = resolve_strategy(load_strategy_config(Path(args.config)))
        logger.info(f"Loaded strategy config: {args.config}")

    request = BacktestRequest(
        start_date=date.fromisoformat(args.start),
        end_date=date.fromisoformat(args.end) if args.end else date.today(),
        initial_cash=args.cash,
        stock1_ticker=args.stock1.upper(),
        stock2_ticker=args.stock2.upper(),
        allocation=allocation,
        rules=rules,
        reference_ticker=args.reference.upper(),
    )

    result = BacktestPipeline().run(request)
    print(format_backtest_report(result))

    reports = generate_all_reports(result, Path(args.output))
    for name, path in reports.items():
        if path:
            logger.info(f"Generated {name}: {path}")
    return 0


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main() -> int:
    """
    Main entry point.

    Returns
    -------
    int
        Exit code (0 for success, 1 for failure)
    """
    start_time = time.time()

    parser = argparse.ArgumentParser(
        description="Moving-Average Phase Rotation Backtester",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_backtest.py phase
  python run_backtest.py backtest --start 2020-01-02 --stock1 QQQ --stock2 SCHD
  python run_backtest.py backtest --start 2018-01-02 --end 2023-12-29 --cash 50000 --config strategy.json
        """
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument(
        "--reference", "-r",
        default=REFERENCE_TICKER,
        help=f"Reference instrument for phase detection (default: {REFERENCE_TICKER})"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    phase_parser = sub.add_parser("phase", help="Show the current market phase")
    phase_parser.add_argument("--json", action="store_true", help="Also print the JSON result")

    bt = sub.add_parser("backtest", help="Run the rotation backtest")
    bt.add_argument("--start", "-t", required=True, help="Start date YYYY-MM-DD")
    bt.add_argument("--end", "-e", default=None, help="End date YYYY-MM-DD (default: today)")
    bt.add_argument("--cash", "-c", type=float, default=DEFAULT_CASH,
                    help=f"Initial cash (default: {DEFAULT_CASH:,.0f})")
    bt.add_argument("--stock1", default=DEFAULT_STOCK1, help=f"First asset (default: {DEFAULT_STOCK1})")
    bt.add_argument("--stock2", default=DEFAULT_STOCK2, help=f"Second asset (default: {DEFAULT_STOCK2})")
    bt.add_argument("--config", default=None, help="JSON file with allocation / maConfig")
    bt.add_argument("--output", "-o", default=str(OUTPUT_DIR), help="Output directory")

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="  %(asctime)s │ %(levelname)s │ %(message)s",
        datefmt="%H:%M:%S"
    )
    logger = logging.getLogger(__name__)

    try:
        if args.command == "phase":
            code = run_phase(args, logger)
        else:
            code = run_backtest_command(args, logger)
    except BacktestError as e:
        logger.error(f"[{e.status.value}] {e.message}")
        return 1
    except ValueError as e:
        logger.error(f"Invalid argument: {e}")
        return 1

    logger.info(f"Finished in {time.time() - start_time:.1f}s")
    return code


if __name__ == "__main__":
    sys.exit(main())
