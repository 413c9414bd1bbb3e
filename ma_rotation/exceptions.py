"""
Tagged exceptions for the rotation backtester.

Each error carries a BacktestStatus so callers can report the failure kind
alongside the human-readable message.
"""

from __future__ import annotations

from .config import BacktestStatus


class BacktestError(Exception):
    """Base class for all reportable backtest failures."""

    status: BacktestStatus = BacktestStatus.INVALID_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DataUnavailableError(BacktestError):
    """Raised when a price source fails or a ticker yields no usable data."""
    status = BacktestStatus.DATA_UNAVAILABLE


class InsufficientHistoryError(BacktestError):
    """Raised when the reference history is too short for MA1000."""
    status = BacktestStatus.INSUFFICIENT_HISTORY


class InvalidRangeError(BacktestError):
    """Raised when the requested start date is after the end date."""
    status = BacktestStatus.INVALID_RANGE


class NoSimulableDaysError(BacktestError):
    """Raised when no day is eligible for simulation after alignment."""
    status = BacktestStatus.NO_SIMULABLE_DAYS


class InvalidRequestError(BacktestError):
    """Raised when required request fields are missing or malformed."""
    status = BacktestStatus.INVALID_REQUEST
