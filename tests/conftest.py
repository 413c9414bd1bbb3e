"""Shared fixtures for the rotation backtester tests."""

from __future__ import annotations

from datetime import date
from typing import Dict, List, Sequence

import numpy as np
import pandas as pd
import pytest

from ma_rotation.technical_indicators import MovingAverages


def make_series(values: Sequence[float], start: str = "2020-01-01", name: str = "close") -> pd.Series:
    """Close series on consecutive business days."""
    index = pd.bdate_range(start=start, periods=len(values))
    return pd.Series(np.asarray(values, dtype=float), index=index, name=name)


def flat_mas(index: pd.DatetimeIndex, level: float = 100.0) -> MovingAverages:
    """All three averages pinned at ``level`` so the price alone picks the phase."""
    s = pd.Series(level, index=index, dtype=float)
    return MovingAverages(ma20=s, ma200=s, ma1000=s)


class FakeAcquisition:
    """Stands in for PriceAcquisition; serves prepared series by ticker."""

    def __init__(self, series: Dict[str, pd.Series]):
        self.series = series
        self.calls: List[tuple] = []

    def fetch_many(self, tickers, start, end, today=None):
        self.calls.append((tuple(tickers), start, end))
        return {t: self.series[t] for t in tickers}

    def fetch_close_series(self, ticker, start, end, today=None):
        self.calls.append(((ticker,), start, end))
        return self.series[ticker]


@pytest.fixture
def today() -> date:
    return date(2025, 6, 30)
