"""
Configuration Module for the Moving-Average Rotation Backtester

This module centralizes all constants, phase rules, allocation tables and
presentation settings used throughout the backtest pipeline.

All "magic numbers" and configuration values are defined here to ensure:
1. Single source of truth for MA periods, lookbacks and the reference ticker
2. Easy modification of the default phase rules without touching engine code
3. Transparency in the phase priority order (first match wins)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


# =============================================================================
# ENUMERATIONS
# =============================================================================

class MarketPhase(Enum):
    """Market phases derived from the reference instrument's moving averages."""
    BULL = "bull"
    BEAR = "bear"
    REENTRY = "reentry"
    MOMENTUM = "momentum"
    MOMENTUM2 = "momentum2"
    UNKNOWN = "unknown"


class MAPosition(Enum):
    """Required position of the reference price relative to one moving average."""
    ABOVE = "above"
    BELOW = "below"
    ANY = "any"


class BacktestStatus(Enum):
    """Outcome tags for a backtest or phase lookup."""
    SUCCESS = "SUCCESS"
    DATA_UNAVAILABLE = "DATA_UNAVAILABLE"
    INSUFFICIENT_HISTORY = "INSUFFICIENT_HISTORY"
    INVALID_RANGE = "INVALID_RANGE"
    NO_SIMULABLE_DAYS = "NO_SIMULABLE_DAYS"
    INVALID_REQUEST = "INVALID_REQUEST"


# =============================================================================
# CONSTANTS
# =============================================================================

REFERENCE_TICKER: str = "TQQQ"

# Moving average periods (trading days)
MA_SHORT: int = 20
MA_MEDIUM: int = 200
MA_LONG: int = 1000

# MA1000 needs at least this many reference closes
MIN_HISTORY_POINTS: int = MA_LONG

# Calendar days fetched before the requested start so MA1000 is defined
HISTORY_LOOKBACK_DAYS: int = 1500

TRADING_DAYS_YEAR: int = 252

# Evaluation order of the classifier; earlier phases win ties
PHASE_PRIORITY: Tuple[MarketPhase, ...] = (
    MarketPhase.BULL,
    MarketPhase.BEAR,
    MarketPhase.REENTRY,
    MarketPhase.MOMENTUM,
    MarketPhase.MOMENTUM2,
)

PHASE_LABELS: Dict[MarketPhase, str] = {
    MarketPhase.BULL: "상승장",
    MarketPhase.BEAR: "하락장",
    MarketPhase.REENTRY: "재진입",
    MarketPhase.MOMENTUM: "모멘텀전환",
    MarketPhase.MOMENTUM2: "모멘텀전환2",
    MarketPhase.UNKNOWN: "장 상황 미정",
}


# =============================================================================
# RULE AND ALLOCATION STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class PhaseRule:
    """
    Conditions on the reference price versus MA1000, MA200 and MA20.

    All three conditions must hold for the phase to match.
    """
    ma1000: MAPosition = MAPosition.ANY
    ma200: MAPosition = MAPosition.ANY
    ma20: MAPosition = MAPosition.ANY

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PhaseRule:
        """Build a rule from {'ma1000': 'above', 'ma200': 'any', 'ma20': 'below'}."""
        return cls(
            ma1000=MAPosition(str(data.get("ma1000", "any")).lower()),
            ma200=MAPosition(str(data.get("ma200", "any")).lower()),
            ma20=MAPosition(str(data.get("ma20", "any")).lower()),
        )

@dataclass(frozen=True)
class AllocationTarget:
    """Percentage weights for one phase (e.g. stock1=60, stock2=40, cash=0)."""
    stock1: float = 0.0
    stock2: float = 0.0
    cash: float = 0.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AllocationTarget:
        return cls(
            stock1=float(data.get("stock1", 0) or 0),
            stock2=float(data.get("stock2", 0) or 0),
            cash=float(data.get("cash", 0) or 0),
        )

PhaseRules = Dict[MarketPhase, PhaseRule]
AllocationTable = Dict[MarketPhase, AllocationTarget]


DEFAULT_PHASE_RULES: PhaseRules = {
    MarketPhase.BULL: PhaseRule(MAPosition.ANY, MAPosition.ABOVE, MAPosition.ANY),
    MarketPhase.BEAR: PhaseRule(MAPosition.ANY, MAPosition.BELOW, MAPosition.ANY),
    MarketPhase.REENTRY: PhaseRule(MAPosition.BELOW, MAPosition.BELOW, MAPosition.BELOW),
    MarketPhase.MOMENTUM: PhaseRule(MAPosition.ABOVE, MAPosition.BELOW, MAPosition.ABOVE),
    MarketPhase.MOMENTUM2: PhaseRule(MAPosition.BELOW, MAPosition.ABOVE, MAPosition.ABOVE),
}

DEFAULT_ALLOCATION: AllocationTable = {
    MarketPhase.BULL: AllocationTarget(stock1=100.0),
    MarketPhase.BEAR: AllocationTarget(cash=100.0),
    MarketPhase.REENTRY: AllocationTarget(stock1=100.0),
    MarketPhase.MOMENTUM: AllocationTarget(stock2=100.0),
    MarketPhase.MOMENTUM2: AllocationTarget(stock2=100.0),
}


# =============================================================================
# OUTPUT CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class OutputConfig:
    """Configuration for snapshot rounding and report generation."""

    # Number formatting
    currency_decimal_places: int = 2
    percentage_decimal_places: int = 2

    # Enabled output formats
    json_enabled: bool = True
    markdown_enabled: bool = True
    parquet_enabled: bool = True


OUTPUT = OutputConfig()


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_phase_label(phase: MarketPhase) -> str:
    """Localized display label for a phase."""
    return PHASE_LABELS.get(phase, phase.value)


def parse_phase_rules(data: Mapping[str, Mapping[str, Any]]) -> PhaseRules:
    """
    Build a rule table from a mapping keyed by phase name.

    Unknown phase names are ignored; phases missing from the mapping are
    simply absent and never match. An empty rule ({}) is all "any" and
    matches every day with defined averages.

    Args:
        data: e.g. {'bull': {'ma1000': 'any', 'ma200': 'above', 'ma20': 'any'}}

    Returns:
        Dictionary mapping MarketPhase to PhaseRule
    """
    rules: PhaseRules = {}
    for phase in PHASE_PRIORITY:
        entry = data.get(phase.value)
        if entry is not None:
            rules[phase] = PhaseRule.from_dict(entry)
    return rules


def parse_allocation(data: Optional[Mapping[str, Mapping[str, Any]]]) -> AllocationTable:
    """
    Build an allocation table from a mapping keyed by phase name.

    Args:
        data: e.g. {'bull': {'stock1': 100, 'stock2': 0, 'cash': 0}}

    Returns:
        Dictionary mapping MarketPhase to AllocationTarget
    """
    table: AllocationTable = {}
    for phase in PHASE_PRIORITY:
        entry = (data or {}).get(phase.value)
        if entry is not None:
            table[phase] = AllocationTarget.from_dict(entry)
    return table
