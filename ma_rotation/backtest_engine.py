"""
Phase Rotation Backtesting Engine
=================================

Simulates a two-asset + cash rotation strategy driven by the market phase of
a reference instrument (TQQQ by default).

ARCHITECTURE
------------
    Layer 1: Data Alignment
        - synchronize_series: reference-calendar alignment with forward-fill
        - resolve_start_index: single date-adjustment policy

    Layer 2: Simulation
        - PortfolioState: cash + whole-share holdings ledger (full precision)
        - BacktestEngine: day-by-day phase detection and rebalancing
        - DailySnapshot: rounded, immutable per-day record

    Layer 3: Aggregation
        - monthly_results / yearly_results: period-end subsequences
        - summarize: final value, total return, profit, stock1 price return

    Layer 4: Orchestration
        - BacktestRequest: validated request (from a plain mapping)
        - BacktestPipeline: fetch -> synchronize -> MA -> start index ->
          simulate -> aggregate -> summarize
        - BacktestResult: complete results container

REBALANCING RULE
----------------
A rebalance fires on the first simulated day and on every day the phase
differs from the last recorded phase (``unknown`` never triggers). On a
rebalance everything is liquidated at today's prices and reinvested per the
phase's allocation, buying whole shares only:

    shares = floor(total_value * weight% / price)

Rounding to 2 decimals happens only when a snapshot is built; the ledger
keeps full precision across rebalances.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from .config import (
    DEFAULT_PHASE_RULES,
    HISTORY_LOOKBACK_DAYS,
    MIN_HISTORY_POINTS,
    OUTPUT,
    REFERENCE_TICKER,
    TRADING_DAYS_YEAR,
    AllocationTable,
    BacktestStatus,
    MarketPhase,
    PhaseRules,
    get_phase_label,
    parse_allocation,
    parse_phase_rules,
)
from .data_collector import PriceAcquisition, to_date
from .exceptions import (
    DataUnavailableError,
    InsufficientHistoryError,
    InvalidRangeError,
    InvalidRequestError,
    NoSimulableDaysError,
)
from .regime_detector import classify_phase
from .technical_indicators import MovingAverages, compute_moving_averages

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# =============================================================================
# SECTION 1: DATA ALIGNMENT
# =============================================================================

def synchronize_series(reference_index: pd.DatetimeIndex, secondary: pd.Series) -> pd.Series:
    """
    Align a secondary close series onto the reference calendar.

    Each reference date takes the secondary close on the same calendar date;
    without an exact match the previous aligned value is carried forward, and
    before any match the value is 0.

    Args:
        reference_index: Reference trading dates (ascending)
        secondary: Secondary closes indexed by date

    Returns:
        Series indexed by ``reference_index``
    """
    secondary = secondary[~secondary.index.duplicated(keep="last")]
    aligned = secondary.reindex(reference_index)
    return aligned.ffill().fillna(0.0).astype(float)


def synchronize(
    reference: pd.Series,
    stock1: pd.Series,
    stock2: pd.Series
) -> Tuple[pd.Series, pd.Series]:
    """Align both rotating assets onto the reference calendar."""
    return (
        synchronize_series(reference.index, stock1),
        synchronize_series(reference.index, stock2),
    )


def _first_positive(series: pd.Series) -> int:
    hits = np.flatnonzero(series.to_numpy(dtype=float) > 0)
    return int(hits[0]) if len(hits) else -1


def resolve_start_index(
    reference: pd.Series,
    stock1: pd.Series,
    stock2: pd.Series,
    mas: MovingAverages,
    start_date: date,
    stock1_ticker: str = "stock1",
    stock2_ticker: str = "stock2"
) -> int:
    """
    Determine the first simulated index.

    The requested start date advances to the next trading day when it is not
    one. The result is the latest of: MA1000 first defined, the adjusted
    start date, and each synchronized asset's first positive price.

    Raises:
        InsufficientHistoryError: MA1000 never defined, or start date after
            all available history
        DataUnavailableError: an asset has no positive price in the window
    """
    n = len(reference)

    ma_valid_index = mas.first_valid_index()
    if ma_valid_index == -1:
        raise InsufficientHistoryError(
            f"MA{MIN_HISTORY_POINTS} is undefined on {n} reference data points."
        )

    requested = pd.Timestamp(start_date)
    user_index = int(reference.index.searchsorted(requested, side="left"))
    if user_index >= n:
        raise InsufficientHistoryError(
            f"No price data exists on or after the requested start date ({start_date})."
        )
    adjusted = reference.index[user_index]
    if adjusted != requested:
        logger.info(
            f"Requested start {start_date} is not a trading day; "
            f"starting on next trading day {adjusted.date()}"
        )

    stock1_index = _first_positive(stock1)
    if stock1_index == -1:
        raise DataUnavailableError(
            f"No valid price data for {stock1_ticker} within the backtest period. "
            "Check the ticker or change the start date."
        )
    stock2_index = _first_positive(stock2)
    if stock2_index == -1:
        raise DataUnavailableError(
            f"No valid price data for {stock2_ticker} within the backtest period. "
            "Check the ticker or change the start date."
        )

    start_index = max(ma_valid_index, user_index, stock1_index, stock2_index)

    logger.info(f"Effective simulation start index: {start_index} ({reference.index[start_index].date()})")
    return start_index


# =============================================================================
# SECTION 2: DATA STRUCTURES
# =============================================================================

@dataclass
class PortfolioState:
    """Cash and whole-share holdings; mutated only at rebalance events."""
    cash: float
    stock1_shares: int = 0
    stock2_shares: int = 0

    def total_value(self, stock1_price: float, stock2_price: float) -> float:
        return self.cash + self.stock1_shares * stock1_price + self.stock2_shares * stock2_price

    def liquidate(self, total_value: float) -> None:
        self.stock1_shares = 0
        self.stock2_shares = 0
        self.cash = total_value

    def buy(self, asset: str, amount: float, price: float) -> int:
        """Buy as many whole shares of ``asset`` as ``amount`` covers."""
        shares = max(int(math.floor(amount / price)), 0)
        if asset == "stock1":
            self.stock1_shares = shares
        else:
            self.stock2_shares = shares
        self.cash -= shares * price
        return shares


@dataclass(frozen=True)
class DailySnapshot:
    """
    Immutable record of one simulated day.

    Monetary fields and the return rate are rounded to 2 decimals.
    """
    date: date
    phase: MarketPhase
    phase_label: str
    tqqq_price: float
    stock1_price: float
    stock1_value: float
    stock2_price: float
    stock2_value: float
    cash: float
    total_value: float
    return_rate: float
    stock1_shares: int = 0
    stock2_shares: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "phase": self.phase_label,
            "phaseKey": self.phase.value,
            "tqqqPrice": self.tqqq_price,
            "stock1Price": self.stock1_price,
            "stock1Value": self.stock1_value,
            "stock2Price": self.stock2_price,
            "stock2Value": self.stock2_value,
            "cash": self.cash,
            "totalValue": self.total_value,
            "returnRate": self.return_rate,
            "stock1Shares": self.stock1_shares,
            "stock2Shares": self.stock2_shares,
        }


@dataclass(frozen=True)
class BacktestSummary:
    """Headline totals for a completed backtest."""
    final_value: float
    total_return: float           # % versus initial cash
    profit: float
    stock1_price_return: float    # buy-and-hold % for stock1 over the window
    stock1_start_price: float
    stock1_end_price: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "finalValue": self.final_value,
            "totalReturn": self.total_return,
            "profit": self.profit,
            "stock1PriceReturn": self.stock1_price_return,
            "stock1StartPrice": self.stock1_start_price,
            "stock1EndPrice": self.stock1_end_price,
        }


@dataclass
class BacktestResult:
    """Complete backtest result container."""
    status: BacktestStatus

    # Identification
    reference_ticker: str
    stock1_ticker: str
    stock2_ticker: str

    # Effective period actually simulated
    start_date: date
    end_date: date
    initial_cash: float
    data_points: int

    summary: BacktestSummary
    daily: List[DailySnapshot] = field(default_factory=list)
    monthly: List[DailySnapshot] = field(default_factory=list)
    yearly: List[DailySnapshot] = field(default_factory=list)

    # Metadata
    processing_time_ms: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)
    version: str = VERSION

    @property
    def trading_days(self) -> int:
        return len(self.daily)

    @property
    def years(self) -> float:
        return len(self.daily) / TRADING_DAYS_YEAR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.status == BacktestStatus.SUCCESS,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "initialCash": self.initial_cash,
            "referenceTicker": self.reference_ticker,
            "stock1Ticker": self.stock1_ticker,
            "stock2Ticker": self.stock2_ticker,
            "dataPoints": self.data_points,
            "dailyResults": [s.to_dict() for s in self.daily],
            "monthlyResults": [s.to_dict() for s in self.monthly],
            "yearlyResults": [s.to_dict() for s in self.yearly],
            "summary": self.summary.to_dict(),
        }


# =============================================================================
# SECTION 3: BACKTEST ENGINE
# =============================================================================

class BacktestEngine:
    """
    Day-by-day phase rotation simulator.

    Features:
        - Phase detection per day from the reference MAs
        - Full liquidation and reinvestment on every phase change
        - Whole-share purchases (floor division)
        - Silent skipping of days with a missing or non-positive asset price

    The engine performs no I/O and raises no domain errors; a phase without
    an allocation entry simply stays in cash.
    """

    def __init__(
        self,
        initial_cash: float,
        allocation: AllocationTable,
        rules: PhaseRules = DEFAULT_PHASE_RULES
    ):
        """
        Initialize backtest engine.

        Args:
            initial_cash: Starting cash (> 0)
            allocation: Target weights per phase
            rules: Phase rule table
        """
        self.initial_cash = float(initial_cash)
        self.allocation = allocation
        self.rules = rules

    def run(
        self,
        reference: pd.Series,
        stock1: pd.Series,
        stock2: pd.Series,
        mas: MovingAverages,
        start_index: int
    ) -> List[DailySnapshot]:
        """
        Simulate from ``start_index`` to the end of the series.

        Args:
            reference: Reference closes
            stock1: stock1 closes synchronized to the reference calendar
            stock2: stock2 closes synchronized to the reference calendar
            mas: Reference moving averages (same length as ``reference``)
            start_index: First simulated position

        Returns:
            One DailySnapshot per day with a determined phase
        """
        state = PortfolioState(cash=self.initial_cash)
        last_phase: Optional[MarketPhase] = None
        results: List[DailySnapshot] = []

        ref_prices = reference.to_numpy(dtype=float)
        stock1_prices = stock1.to_numpy(dtype=float)
        stock2_prices = stock2.to_numpy(dtype=float)
        dates = reference.index

        for i in range(start_index, len(ref_prices)):
            price = ref_prices[i]
            price1 = stock1_prices[i] if i < len(stock1_prices) else np.nan
            price2 = stock2_prices[i] if i < len(stock2_prices) else np.nan

            if not (price1 > 0 and price2 > 0):
                logger.debug(f"Skipping {dates[i].date()}: invalid asset price ({price1}, {price2})")
                continue

            ma1000, ma200, ma20 = mas.at(i)
            phase = classify_phase(price, ma1000, ma200, ma20, self.rules)

            if phase != MarketPhase.UNKNOWN and (phase != last_phase or i == start_index):
                if i == start_index:
                    total_value = self.initial_cash
                else:
                    total_value = state.total_value(price1, price2)
                self._rebalance(state, phase, total_value, price1, price2)
                logger.debug(
                    f"{dates[i].date()}: {last_phase.value if last_phase else 'start'} -> "
                    f"{phase.value}, value {total_value:,.2f}"
                )
                last_phase = phase

            if phase != MarketPhase.UNKNOWN:
                results.append(self._snapshot(dates[i], phase, price, price1, price2, state))

        logger.info(f"Simulated {len(results)} days from index {start_index}")
        return results

    def _rebalance(
        self,
        state: PortfolioState,
        phase: MarketPhase,
        total_value: float,
        price1: float,
        price2: float
    ) -> None:
        state.liquidate(total_value)

        target = self.allocation.get(phase)
        if target is None or target.cash < 0:
            return

        if target.stock1 > 0:
            state.buy("stock1", total_value * (target.stock1 / 100), price1)
        if target.stock2 > 0:
            state.buy("stock2", total_value * (target.stock2 / 100), price2)

    def _snapshot(
        self,
        when: pd.Timestamp,
        phase: MarketPhase,
        price: float,
        price1: float,
        price2: float,
        state: PortfolioState
    ) -> DailySnapshot:
        places = OUTPUT.currency_decimal_places
        stock1_value = state.stock1_shares * price1
        stock2_value = state.stock2_shares * price2
        total_value = state.cash + stock1_value + stock2_value
        return_rate = (total_value - self.initial_cash) / self.initial_cash * 100

        return DailySnapshot(
            date=pd.Timestamp(when).date(),
            phase=phase,
            phase_label=get_phase_label(phase),
            tqqq_price=round(float(price), places),
            stock1_price=round(float(price1), places),
            stock1_value=round(float(stock1_value), places),
            stock2_price=round(float(price2), places),
            stock2_value=round(float(stock2_value), places),
            cash=round(float(state.cash), places),
            total_value=round(float(total_value), places),
            return_rate=round(float(return_rate), OUTPUT.percentage_decimal_places),
            stock1_shares=state.stock1_shares,
            stock2_shares=state.stock2_shares,
        )


# =============================================================================
# SECTION 4: AGGREGATION
# =============================================================================

def _period_ends(
    daily: List[DailySnapshot],
    period_key: Callable[[date], Any]
) -> List[DailySnapshot]:
    last = len(daily) - 1
    return [
        snap for i, snap in enumerate(daily)
        if i == last or period_key(snap.date) != period_key(daily[i + 1].date)
    ]


def monthly_results(daily: List[DailySnapshot]) -> List[DailySnapshot]:
    """Last snapshot of each calendar month, plus the final snapshot."""
    return _period_ends(daily, lambda d: (d.year, d.month))


def yearly_results(daily: List[DailySnapshot]) -> List[DailySnapshot]:
    """Last snapshot of each calendar year, plus the final snapshot."""
    return _period_ends(daily, lambda d: d.year)


def summarize(daily: List[DailySnapshot], initial_cash: float) -> BacktestSummary:
    """
    Headline totals from a non-empty daily series.

    The stock1 price return uses the rounded prices of the first and last
    snapshots; it is 0 when the start price is not positive.
    """
    first, final = daily[0], daily[-1]
    places = OUTPUT.percentage_decimal_places

    start_price = first.stock1_price
    end_price = final.stock1_price
    price_return = 0.0
    if start_price > 0:
        price_return = round((end_price - start_price) / start_price * 100, places)

    return BacktestSummary(
        final_value=final.total_value,
        total_return=round((final.total_value - initial_cash) / initial_cash * 100, places),
        profit=round(final.total_value - initial_cash, OUTPUT.currency_decimal_places),
        stock1_price_return=price_return,
        stock1_start_price=start_price,
        stock1_end_price=end_price,
    )


# =============================================================================
# SECTION 5: REQUEST AND PIPELINE
# =============================================================================

@dataclass
class BacktestRequest:
    """Validated backtest parameters."""
    start_date: date
    end_date: date
    initial_cash: float
    stock1_ticker: str
    stock2_ticker: str
    allocation: AllocationTable
    rules: PhaseRules
    reference_ticker: str = REFERENCE_TICKER

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BacktestRequest:
        """
        Build a request from the camelCase mapping an API body carries.

        Required keys: startDate, endDate, initialCash, stock1Ticker,
        stock2Ticker, maConfig. ``allocation`` may be omitted.

        Raises:
            InvalidRequestError: missing or malformed fields
        """
        required = ["startDate", "endDate", "initialCash", "stock1Ticker", "stock2Ticker", "maConfig"]
        missing = [key for key in required if not data.get(key)]
        if missing:
            raise InvalidRequestError(f"All fields are required; missing: {', '.join(missing)}")

        try:
            return cls(
                start_date=to_date(data["startDate"]),
                end_date=to_date(data["endDate"]),
                initial_cash=float(data["initialCash"]),
                stock1_ticker=str(data["stock1Ticker"]).strip().upper(),
                stock2_ticker=str(data["stock2Ticker"]).strip().upper(),
                allocation=parse_allocation(data.get("allocation")),
                rules=parse_phase_rules(data["maConfig"]),
                reference_ticker=str(data.get("referenceTicker") or REFERENCE_TICKER).upper(),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise InvalidRequestError(f"Invalid request: {e}") from e

    def validate(self, today: Optional[date] = None) -> None:
        """
        Raises:
            InvalidRequestError: non-positive initial cash
            InvalidRangeError: start date after the effective end date
        """
        if not self.initial_cash > 0:
            raise InvalidRequestError(f"Initial cash must be positive, got {self.initial_cash}")

        effective_end = min(self.end_date, today or date.today())
        if self.start_date > effective_end:
            raise InvalidRangeError(
                f"Start date {self.start_date} is after the end date {effective_end}."
            )


class BacktestPipeline:
    """
    Complete backtest orchestrator.

    Usage:
        pipeline = BacktestPipeline()
        result = pipeline.run(BacktestRequest.from_dict(body))
    """

    def __init__(self, acquisition: Optional[PriceAcquisition] = None):
        self.acquisition = acquisition or PriceAcquisition()

    def run(self, request: BacktestRequest, today: Optional[date] = None) -> BacktestResult:
        """
        Run the full backtest for a request.

        Raises:
            BacktestError subclasses with a status tag and message
        """
        t0 = time.perf_counter()
        request.validate(today)

        # Stage 1: acquire with enough lookback for MA1000
        fetch_start = request.start_date - timedelta(days=HISTORY_LOOKBACK_DAYS)
        logger.info(
            f"Fetching {request.reference_ticker}, {request.stock1_ticker}, "
            f"{request.stock2_ticker} from {fetch_start} to {request.end_date}"
        )
        data = self.acquisition.fetch_many(
            [request.reference_ticker, request.stock1_ticker, request.stock2_ticker],
            fetch_start, request.end_date, today
        )
        reference = data[request.reference_ticker]

        if len(reference) < MIN_HISTORY_POINTS:
            years = math.ceil(MIN_HISTORY_POINTS / TRADING_DAYS_YEAR)
            raise InsufficientHistoryError(
                f"MA{MIN_HISTORY_POINTS} needs at least {MIN_HISTORY_POINTS} data points; "
                f"got {len(reference)}. Move the start date about {years} years earlier."
            )

        # Stage 2: align and compute indicators
        stock1, stock2 = synchronize(
            reference, data[request.stock1_ticker], data[request.stock2_ticker]
        )
        mas = compute_moving_averages(reference)

        # Stage 3: simulate
        start_index = resolve_start_index(
            reference, stock1, stock2, mas, request.start_date,
            request.stock1_ticker, request.stock2_ticker
        )
        engine = BacktestEngine(request.initial_cash, request.allocation, request.rules)
        daily = engine.run(reference, stock1, stock2, mas, start_index)

        if not daily:
            raise NoSimulableDaysError("Backtest produced no results: no simulable days.")

        # Stage 4: aggregate
        result = BacktestResult(
            status=BacktestStatus.SUCCESS,
            reference_ticker=request.reference_ticker,
            stock1_ticker=request.stock1_ticker,
            stock2_ticker=request.stock2_ticker,
            start_date=daily[0].date,
            end_date=daily[-1].date,
            initial_cash=request.initial_cash,
            data_points=len(reference),
            summary=summarize(daily, request.initial_cash),
            daily=daily,
            monthly=monthly_results(daily),
            yearly=yearly_results(daily),
            processing_time_ms=(time.perf_counter() - t0) * 1000,
        )
        logger.info(
            f"Backtest complete: {result.start_date} to {result.end_date}, "
            f"final value {result.summary.final_value:,.2f} ({result.summary.total_return:+.2f}%)"
        )
        return result


# =============================================================================
# SECTION 6: OUTPUT FORMATTING
# =============================================================================

def format_backtest_report(result: BacktestResult) -> str:
    """Format a backtest result as a human-readable text report."""
    s = result.summary
    lines = [
        "=" * 70,
        "PHASE ROTATION BACKTEST REPORT",
        "=" * 70,
        f"Reference: {result.reference_ticker}",
        f"Assets: {result.stock1_ticker} / {result.stock2_ticker}",
        f"Period: {result.start_date} to {result.end_date} "
        f"({result.trading_days:,} days, {result.years:.1f} years)",
        f"Initial Cash: {result.initial_cash:,.2f}",
        "",
        "-" * 70,
        "SUMMARY",
        "-" * 70,
        f"Final Value: {s.final_value:,.2f}",
        f"Total Return: {s.total_return:+.2f}%",
        f"Profit: {s.profit:+,.2f}",
        f"{result.stock1_ticker} Price Return: {s.stock1_price_return:+.2f}% "
        f"({s.stock1_start_price:,.2f} -> {s.stock1_end_price:,.2f})",
        "",
        "-" * 70,
        "YEARLY RESULTS",
        "-" * 70,
    ]

    for snap in result.yearly:
        lines.append(
            f"  {snap.date}  {snap.phase.value:<10} {snap.total_value:>14,.2f}  {snap.return_rate:+8.2f}%"
        )

    lines.extend([
        "",
        "=" * 70,
        f"Processing Time: {result.processing_time_ms:.0f}ms | Version: {result.version}",
        "=" * 70,
    ])
    return "\n".join(lines)


def run_backtest(
    start_date: str,
    end_date: str,
    initial_cash: float,
    stock1_ticker: str,
    stock2_ticker: str,
    allocation: AllocationTable,
    rules: PhaseRules = DEFAULT_PHASE_RULES,
    acquisition: Optional[PriceAcquisition] = None
) -> BacktestResult:
    """
    Convenience function for a backtest in one call.

    Example:
        >>> from ma_rotation.config import DEFAULT_ALLOCATION
        >>> result = run_backtest('2020-01-01', '2024-12-31', 10000, 'QQQ', 'SCHD', DEFAULT_ALLOCATION)
        >>> print(f"Total return: {result.summary.total_return:.2f}%")
    """
    request = BacktestRequest(
        start_date=to_date(start_date),
        end_date=to_date(end_date),
        initial_cash=float(initial_cash),
        stock1_ticker=stock1_ticker.upper(),
        stock2_ticker=stock2_ticker.upper(),
        allocation=allocation,
        rules=rules,
    )
    return BacktestPipeline(acquisition).run(request)
