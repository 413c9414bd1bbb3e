"""
Moving Average Calculator for the Rotation Backtester

Computes trailing simple moving averages aligned index-for-index with the
input close series. Entries with fewer than ``period`` observations are NaN,
so the output always has the same length as the input.

    SMA_t = (C_t + C_{t-1} + ... + C_{t-period+1}) / period

No smoothing, no partial windows: a 1000-day average on 999 closes is
entirely undefined.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .config import MA_LONG, MA_MEDIUM, MA_SHORT

logger = logging.getLogger(__name__)


# =============================================================================
# SIMPLE MOVING AVERAGE
# =============================================================================

def calculate_sma(close: pd.Series, period: int) -> pd.Series:
    """
    Trailing simple moving average.

    ``period`` must be >= 1; validating it is the caller's job.

    Args:
        close: Close prices ordered by date
        period: Window length in observations

    Returns:
        Series with the same index as ``close``; NaN where i < period - 1
    """
    return close.astype(float).rolling(window=period, min_periods=period).mean()


@dataclass(frozen=True)
class MovingAverages:
    """The three reference averages used by the phase classifier."""
    ma20: pd.Series
    ma200: pd.Series
    ma1000: pd.Series

    def at(self, i: int):
        """(ma1000, ma200, ma20) at position i, NaN mapped to None."""
        return (
            _value_or_none(self.ma1000.iloc[i]),
            _value_or_none(self.ma200.iloc[i]),
            _value_or_none(self.ma20.iloc[i]),
        )

    def first_valid_index(self) -> int:
        """Position where MA1000 first becomes defined, or -1 if never."""
        valid = np.flatnonzero(self.ma1000.notna().to_numpy())
        return int(valid[0]) if len(valid) else -1


def compute_moving_averages(close: pd.Series) -> MovingAverages:
    """Compute MA20, MA200 and MA1000 for a reference close series."""
    logger.debug(f"Computing MA{MA_SHORT}/MA{MA_MEDIUM}/MA{MA_LONG} on {len(close)} closes")
    return MovingAverages(
        ma20=calculate_sma(close, MA_SHORT),
        ma200=calculate_sma(close, MA_MEDIUM),
        ma1000=calculate_sma(close, MA_LONG),
    )


def _value_or_none(value):
    if value is None or pd.isna(value):
        return None
    return float(value)
