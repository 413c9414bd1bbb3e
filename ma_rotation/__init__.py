"""
Moving-average phase rotation backtester.

Rotates between two equities and cash according to the market phase of a
reference instrument relative to its 20/200/1000-day moving averages.
"""

from .backtest_engine import (
    BacktestEngine,
    BacktestPipeline,
    BacktestRequest,
    BacktestResult,
    DailySnapshot,
    monthly_results,
    run_backtest,
    yearly_results,
)
from .config import MarketPhase
from .exceptions import BacktestError
from .regime_detector import classify_phase, detect_current_phase, lookup_current_phase

__version__ = "1.0.0"

__all__ = [
    "BacktestEngine",
    "BacktestError",
    "BacktestPipeline",
    "BacktestRequest",
    "BacktestResult",
    "DailySnapshot",
    "MarketPhase",
    "classify_phase",
    "detect_current_phase",
    "lookup_current_phase",
    "monthly_results",
    "run_backtest",
    "yearly_results",
]
