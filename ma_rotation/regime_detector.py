"""
Market Phase Classifier
=======================

Classifies the reference instrument into one of five market phases from the
position of its close relative to three simple moving averages
(MA1000, MA200, MA20).

CLASSIFICATION RULES
--------------------
Each phase carries one condition per average:
    above  -> price > MA
    below  -> price < MA
    any    -> always true

A phase matches when all three conditions hold. Phases are evaluated in the
fixed priority order

    bull -> bear -> reentry -> momentum -> momentum2

and the first match wins. If any average is undefined (insufficient history)
or nothing matches, the phase is ``unknown``.

Default rule table (also used by the current-phase lookup):

    Phase       MA1000   MA200   MA20
    bull        any      above   any
    bear        any      below   any
    reentry     below    below   below
    momentum    above    below   above
    momentum2   below    above   above
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Optional

import pandas as pd

from .config import (
    DEFAULT_PHASE_RULES,
    HISTORY_LOOKBACK_DAYS,
    MIN_HISTORY_POINTS,
    PHASE_PRIORITY,
    REFERENCE_TICKER,
    BacktestStatus,
    MAPosition,
    MarketPhase,
    PhaseRules,
    get_phase_label,
)
from .technical_indicators import compute_moving_averages

logger = logging.getLogger(__name__)


# =============================================================================
# SECTION 1: CLASSIFIER
# =============================================================================

def check_condition(price: float, ma: Optional[float], position: MAPosition) -> bool:
    """Whether ``price`` satisfies ``position`` relative to ``ma``."""
    if ma is None:
        return False
    if position == MAPosition.ABOVE:
        return price > ma
    if position == MAPosition.BELOW:
        return price < ma
    return True


def classify_phase(
    price: float,
    ma1000: Optional[float],
    ma200: Optional[float],
    ma20: Optional[float],
    rules: PhaseRules = DEFAULT_PHASE_RULES
) -> MarketPhase:
    """
    Classify the market phase for one observation.

    Args:
        price: Reference close
        ma1000: 1000-day SMA or None
        ma200: 200-day SMA or None
        ma20: 20-day SMA or None
        rules: Phase rule table; phases missing from it never match

    Returns:
        First matching MarketPhase in priority order, else UNKNOWN
    """
    if ma1000 is None or ma200 is None or ma20 is None:
        return MarketPhase.UNKNOWN

    for phase in PHASE_PRIORITY:
        rule = rules.get(phase)
        if rule is None:
            continue
        if (
            check_condition(price, ma1000, rule.ma1000)
            and check_condition(price, ma200, rule.ma200)
            and check_condition(price, ma20, rule.ma20)
        ):
            return phase

    return MarketPhase.UNKNOWN


# =============================================================================
# SECTION 2: CURRENT PHASE LOOKUP
# =============================================================================

@dataclass
class PhaseLookup:
    """Result of classifying the latest reference observation."""
    success: bool
    status: BacktestStatus
    phase: MarketPhase
    message: str = ""
    as_of: Optional[date] = None
    price: Optional[float] = None
    ma20: Optional[float] = None
    ma200: Optional[float] = None
    ma1000: Optional[float] = None
    n_observations: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def label(self) -> str:
        return get_phase_label(self.phase)

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            return {
                "success": False,
                "status": self.status.value,
                "phaseKey": self.phase.value,
                "message": self.message,
            }
        return {
            "success": True,
            "phaseKey": self.phase.value,
            "phaseName": self.label,
            "date": self.as_of.isoformat() if self.as_of else None,
            "tqqqPrice": _round2(self.price),
            "ma20": _round2(self.ma20),
            "ma200": _round2(self.ma200),
            "ma1000": _round2(self.ma1000),
        }


def lookup_current_phase(prices: pd.Series) -> PhaseLookup:
    """
    Classify the most recent point of a reference close series.

    Uses the default rule table, independent of any backtest configuration.

    Args:
        prices: Reference closes indexed by date (ascending)

    Returns:
        PhaseLookup; ``success`` is False when history is insufficient
    """
    n = len(prices)
    if n < MIN_HISTORY_POINTS:
        return PhaseLookup(
            success=False,
            status=BacktestStatus.INSUFFICIENT_HISTORY,
            phase=MarketPhase.UNKNOWN,
            message=f"Insufficient data for MA{MIN_HISTORY_POINTS}: {n} trading days available.",
            n_observations=n,
        )

    mas = compute_moving_averages(prices)
    latest = n - 1
    ma1000, ma200, ma20 = mas.at(latest)

    if ma1000 is None:
        return PhaseLookup(
            success=False,
            status=BacktestStatus.INSUFFICIENT_HISTORY,
            phase=MarketPhase.UNKNOWN,
            message=f"Insufficient data for MA{MIN_HISTORY_POINTS}.",
            n_observations=n,
        )

    price = float(prices.iloc[latest])
    phase = classify_phase(price, ma1000, ma200, ma20, DEFAULT_PHASE_RULES)
    as_of = pd.Timestamp(prices.index[latest]).date()

    logger.info(f"Current phase as of {as_of}: {phase.value} ({get_phase_label(phase)})")

    return PhaseLookup(
        success=True,
        status=BacktestStatus.SUCCESS,
        phase=phase,
        as_of=as_of,
        price=price,
        ma20=ma20,
        ma200=ma200,
        ma1000=ma1000,
        n_observations=n,
    )


def detect_current_phase(
    ticker: str = REFERENCE_TICKER,
    acquisition: Optional[Any] = None,
    today: Optional[date] = None
) -> PhaseLookup:
    """
    Convenience function: fetch recent history and classify the latest day.

    Fetches ``HISTORY_LOOKBACK_DAYS`` calendar days so MA1000 can be defined.

    Args:
        ticker: Reference symbol
        acquisition: PriceAcquisition instance (created if None)
        today: Override for the current date

    Returns:
        PhaseLookup

    Raises:
        DataUnavailableError: if the price source fails
    """
    from .data_collector import PriceAcquisition

    acquisition = acquisition or PriceAcquisition()
    end = today or date.today()
    start = end - timedelta(days=HISTORY_LOOKBACK_DAYS)

    prices = acquisition.fetch_close_series(ticker, start, end)
    return lookup_current_phase(prices)


def format_phase_report(lookup: PhaseLookup, ticker: str = REFERENCE_TICKER) -> str:
    """Format a phase lookup as human-readable text."""
    lines = [
        "=" * 60,
        "CURRENT MARKET PHASE",
        "=" * 60,
        f"Reference: {ticker}",
    ]

    if not lookup.success:
        lines.extend([
            f"Phase: {lookup.phase.value}",
            f"Status: {lookup.status.value}",
            f"Message: {lookup.message}",
            "=" * 60,
        ])
        return "\n".join(lines)

    lines.extend([
        f"As of: {lookup.as_of}",
        f"Phase: {lookup.phase.value} ({lookup.label})",
        "",
        f"Price:   {lookup.price:,.2f}",
        f"MA20:    {_fmt(lookup.ma20)}",
        f"MA200:   {_fmt(lookup.ma200)}",
        f"MA1000:  {_fmt(lookup.ma1000)}",
        "=" * 60,
    ])
    return "\n".join(lines)


def _round2(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(value, 2)


def _fmt(value: Optional[float]) -> str:
    return "N/A" if value is None else f"{value:,.2f}"
