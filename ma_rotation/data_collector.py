"""
Daily Close Acquisition for the Rotation Backtester

Fetches daily closing prices from Yahoo Finance (via yfinance) and returns
them as ascending, date-deduplicated pandas Series with nulls removed.

PIPELINE
    Stage 1 - CLAMP
        The end date is clamped to today; a start date after today is an
        error (no future data is ever requested).

    Stage 2 - ACQUIRE
        Per-ticker yfinance history request with retry and exponential
        backoff. Each fetch owns its Ticker object, so concurrent fetches
        share no download state.

    Stage 3 - NORMALIZE
        MultiIndex columns flattened, timezone removed, index normalized to
        calendar dates, null closes dropped, duplicates removed, sorted.

Several tickers can be fetched concurrently with ``fetch_many``; the calls are
independent and only need to all complete before synchronization.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Union

import pandas as pd

from .exceptions import DataUnavailableError

logger = logging.getLogger(__name__)

DateLike = Union[str, date, datetime, pd.Timestamp]


def to_date(value: DateLike) -> date:
    """Parse YYYY-MM-DD strings, datetimes and timestamps into a date."""
    if isinstance(value, str):
        return datetime.strptime(value.strip()[:10], "%Y-%m-%d").date()
    if isinstance(value, (datetime, pd.Timestamp)):
        return value.date()
    return value


class PriceAcquisition:
    """
    Yahoo Finance close-price loader with retry logic.

    All fetches are logged; failures are raised as DataUnavailableError with
    the ticker in the message.
    """

    def __init__(self, max_retries: int = 3, timeout: int = 30, retry_delay: float = 1.0):
        """
        Initialize data acquisition.

        Args:
            max_retries: Maximum attempts per ticker
            timeout: Request timeout in seconds
            retry_delay: Base delay for exponential backoff
        """
        self._yf = None
        self.max_retries = max_retries
        self.timeout = timeout
        self.retry_delay = retry_delay

    def _get_yf(self):
        """Lazy load yfinance to avoid import overhead."""
        if self._yf is None:
            import yfinance as yf
            self._yf = yf
        return self._yf

    def fetch_close_series(
        self,
        ticker: str,
        start: DateLike,
        end: DateLike,
        today: Optional[date] = None
    ) -> pd.Series:
        """
        Fetch daily closes for one ticker, both ends inclusive.

        Args:
            ticker: Ticker symbol
            start: Start date
            end: End date (clamped to today)
            today: Override for the current date

        Returns:
            Float Series named ``ticker`` indexed by normalized DatetimeIndex

        Raises:
            DataUnavailableError: on source failure, unknown ticker or
                missing price data
        """
        try:
            start_d = to_date(start)
            end_d = min(to_date(end), today or date.today())

            if start_d > end_d:
                raise ValueError(
                    f"start date {start_d} is after the latest available date {end_d}"
                )

            raw = self._download(ticker, start_d, end_d)
            series = self._normalize(raw, ticker)
        except DataUnavailableError:
            raise
        except Exception as e:
            raise DataUnavailableError(f"{ticker} data fetch failed: {e}") from e

        logger.info(f"Fetched {len(series)} closes for {ticker} ({start_d} to {end_d})")
        return series

    def fetch_many(
        self,
        tickers: List[str],
        start: DateLike,
        end: DateLike,
        today: Optional[date] = None
    ) -> Dict[str, pd.Series]:
        """
        Fetch several tickers concurrently.

        Returns:
            Dictionary keyed by ticker; the first failure is re-raised
        """
        unique = list(dict.fromkeys(tickers))
        with ThreadPoolExecutor(max_workers=len(unique) or 1) as pool:
            futures = {
                t: pool.submit(self.fetch_close_series, t, start, end, today)
                for t in unique
            }
            return {t: f.result() for t, f in futures.items()}

    def _download(self, ticker: str, start: date, end: date) -> pd.DataFrame:
        yf = self._get_yf()
        data = None

        for attempt in range(self.max_retries):
            try:
                data = yf.Ticker(ticker).history(
                    start=start.isoformat(),
                    end=(end + timedelta(days=1)).isoformat(),
                    auto_adjust=False,
                    timeout=self.timeout,
                )

                if data is None or len(data) == 0:
                    if attempt < self.max_retries - 1:
                        wait_time = self.retry_delay * 2 ** attempt
                        logger.warning(f"Empty data for {ticker}, retrying in {wait_time}s...")
                        time.sleep(wait_time)
                        continue
                    raise DataUnavailableError(
                        f"{ticker} data fetch failed: ticker not found or no data returned"
                    )
                break

            except DataUnavailableError:
                raise
            except Exception as e:
                if attempt < self.max_retries - 1:
                    wait_time = self.retry_delay * 2 ** attempt
                    logger.warning(f"Fetch failed for {ticker}: {e}, retrying in {wait_time}s...")
                    time.sleep(wait_time)
                else:
                    raise

        return data

    @staticmethod
    def _normalize(df: pd.DataFrame, ticker: str) -> pd.Series:
        """Reduce a download frame to a clean, ascending close series."""
        if isinstance(df.columns, pd.MultiIndex):
            df = df.copy()
            df.columns = df.columns.get_level_values(0)

        if "Close" not in df.columns:
            raise DataUnavailableError(f"{ticker} data fetch failed: price data not found")

        close = df["Close"]
        if isinstance(close, pd.DataFrame):
            close = close.iloc[:, 0]

        index = pd.to_datetime(close.index)
        if index.tz is not None:
            index = index.tz_localize(None)
        values = pd.to_numeric(close, errors="coerce").to_numpy(dtype=float)
        close = pd.Series(values, index=index.normalize(), name=ticker)

        close = close.dropna()
        close = close[~close.index.duplicated(keep="last")].sort_index()

        if len(close) == 0:
            raise DataUnavailableError(f"{ticker} data fetch failed: price data not found")
        return close
