"""Tests for ma_rotation/backtest_engine.py."""

from datetime import date

import numpy as np
import pandas as pd
import pytest

from ma_rotation.backtest_engine import (
    BacktestEngine,
    BacktestPipeline,
    BacktestRequest,
    DailySnapshot,
    format_backtest_report,
    monthly_results,
    resolve_start_index,
    run_backtest,
    summarize,
    synchronize,
    synchronize_series,
    yearly_results,
)
from ma_rotation.config import (
    AllocationTarget,
    BacktestStatus,
    DEFAULT_ALLOCATION,
    DEFAULT_PHASE_RULES,
    MarketPhase,
)
from ma_rotation.exceptions import (
    DataUnavailableError,
    InsufficientHistoryError,
    InvalidRangeError,
    InvalidRequestError,
    NoSimulableDaysError,
)
from ma_rotation.technical_indicators import MovingAverages, compute_moving_averages

from conftest import FakeAcquisition, flat_mas, make_series


BULL_STOCK1_BEAR_CASH = {
    MarketPhase.BULL: AllocationTarget(stock1=100.0),
    MarketPhase.BEAR: AllocationTarget(cash=100.0),
}


def _engine(allocation=None, cash=10000.0):
    if allocation is None:
        allocation = BULL_STOCK1_BEAR_CASH
    return BacktestEngine(cash, allocation, DEFAULT_PHASE_RULES)


# --- synchronize_series ---

def test_sync_exact_dates_copied():
    ref = make_series([1, 2, 3, 4])
    other = pd.Series([10.0, 20.0, 30.0, 40.0], index=ref.index)
    assert synchronize_series(ref.index, other).tolist() == [10.0, 20.0, 30.0, 40.0]


def test_sync_forward_fills_gaps():
    ref = make_series([1, 2, 3, 4, 5])
    other = pd.Series([10.0, 30.0], index=ref.index[[0, 2]])
    assert synchronize_series(ref.index, other).tolist() == [10.0, 10.0, 30.0, 30.0, 30.0]


def test_sync_zero_before_first_quote():
    ref = make_series([1, 2, 3, 4])
    other = pd.Series([7.0], index=ref.index[[2]])
    assert synchronize_series(ref.index, other).tolist() == [0.0, 0.0, 7.0, 7.0]


def test_sync_ignores_dates_off_reference_calendar():
    ref = make_series([1, 2, 3])
    weekend = ref.index[0] + pd.Timedelta(days=5)
    other = pd.Series([5.0, 99.0], index=[ref.index[0], weekend]).sort_index()
    assert 99.0 not in synchronize_series(ref.index, other).tolist()


def test_sync_independent_gaps():
    ref = make_series([1, 2, 3, 4])
    a = pd.Series([1.0, 3.0], index=ref.index[[0, 2]])
    b = pd.Series([5.0, 6.0], index=ref.index[[1, 3]])
    s1, s2 = synchronize(ref, a, b)
    assert s1.tolist() == [1.0, 1.0, 3.0, 3.0]
    assert s2.tolist() == [0.0, 5.0, 5.0, 6.0]
    assert s1.index.equals(ref.index)


# --- BacktestEngine ---

def test_first_snapshot_equals_initial_cash():
    ref = make_series([110.0] * 3)
    stock1 = make_series([30.0] * 3)
    stock2 = make_series([20.0] * 3)
    daily = _engine().run(ref, stock1, stock2, flat_mas(ref.index), 0)

    first = daily[0]
    assert first.phase == MarketPhase.BULL
    assert first.stock1_shares == 333
    assert first.cash == pytest.approx(10.0)
    assert first.total_value == 10000.0
    assert first.return_rate == 0.0


def test_bull_to_bear_liquidates_to_cash():
    ref = make_series([110.0] * 5 + [90.0] * 5)
    stock1 = make_series([50.0, 51.0, 52.0, 53.0, 54.0, 55.0, 56.0, 57.0, 58.0, 59.0])
    stock2 = make_series([20.0] * 10)
    daily = _engine().run(ref, stock1, stock2, flat_mas(ref.index), 0)

    assert [s.phase for s in daily] == [MarketPhase.BULL] * 5 + [MarketPhase.BEAR] * 5
    before, after = daily[4], daily[5]
    assert before.stock1_shares == 200
    assert after.stock1_shares == 0
    assert after.cash == pytest.approx(200 * 55.0)
    assert all(s.stock1_shares == 0 and s.cash == after.cash for s in daily[5:])


def test_phase_flip_back_rebalances_again():
    ref = make_series([110.0, 90.0, 110.0])
    stock1 = make_series([50.0, 40.0, 25.0])
    stock2 = make_series([20.0] * 3)
    daily = _engine().run(ref, stock1, stock2, flat_mas(ref.index), 0)
    # 200 shares -> 8000 cash -> 320 shares
    assert daily[1].cash == pytest.approx(8000.0)
    assert daily[2].stock1_shares == 320
    assert daily[2].total_value == pytest.approx(8000.0)


def test_same_phase_does_not_rebalance():
    ref = make_series([110.0, 120.0, 130.0])
    stock1 = make_series([50.0, 100.0, 25.0])
    stock2 = make_series([20.0] * 3)
    daily = _engine().run(ref, stock1, stock2, flat_mas(ref.index), 0)
    assert {s.stock1_shares for s in daily} == {200}
    assert daily[1].total_value == pytest.approx(20000.0)
    assert daily[1].return_rate == pytest.approx(100.0)


def test_split_allocation_buys_whole_shares():
    allocation = {MarketPhase.BULL: AllocationTarget(stock1=60.0, stock2=40.0)}
    ref = make_series([110.0])
    stock1 = make_series([33.0])
    stock2 = make_series([17.0])
    snap, = _engine(allocation).run(ref, stock1, stock2, flat_mas(ref.index), 0)
    assert snap.stock1_shares == 181   # floor(6000 / 33)
    assert snap.stock2_shares == 235   # floor(4000 / 17)
    assert snap.cash == pytest.approx(10000 - 181 * 33 - 235 * 17)


def test_missing_allocation_entry_stays_in_cash():
    ref = make_series([90.0, 90.0])
    daily = _engine({}).run(ref, make_series([10.0, 11.0]), make_series([5.0, 5.0]),
                            flat_mas(ref.index), 0)
    assert all(s.cash == 10000.0 and s.stock1_shares == 0 for s in daily)


def test_negative_cash_weight_skips_buying():
    allocation = {MarketPhase.BULL: AllocationTarget(stock1=100.0, cash=-5.0)}
    ref = make_series([110.0])
    snap, = _engine(allocation).run(ref, make_series([10.0]), make_series([5.0]),
                                    flat_mas(ref.index), 0)
    assert snap.stock1_shares == 0
    assert snap.cash == 10000.0


def test_days_with_missing_asset_price_are_skipped():
    n = 60
    ref = make_series([110.0] * n)
    raw = pd.Series(np.full(n - 50, 25.0), index=ref.index[50:])
    stock1 = synchronize_series(ref.index, raw)
    stock2 = make_series([20.0] * n)
    assert (stock1.iloc[:50] == 0).all()

    daily = _engine().run(ref, stock1, stock2, flat_mas(ref.index), 0)
    assert len(daily) == 10
    assert daily[0].date == ref.index[50].date()
    assert daily[0].stock1_shares == 400
    assert daily[0].total_value == 10000.0


def test_skipped_start_day_still_invests_initial_cash():
    ref = make_series([110.0, 110.0, 110.0])
    stock1 = make_series([0.0, 50.0, 50.0])
    daily = _engine().run(ref, stock1, make_series([20.0] * 3), flat_mas(ref.index), 0)
    assert len(daily) == 2
    assert daily[0].stock1_shares == 200


def test_unknown_days_emit_nothing():
    ref = make_series([110.0] * 6)
    ma = pd.Series([np.nan, np.nan, 100.0, 100.0, 100.0, 100.0], index=ref.index)
    mas = MovingAverages(ma20=ma, ma200=ma, ma1000=ma)
    daily = _engine().run(ref, make_series([50.0] * 6), make_series([20.0] * 6), mas, 0)
    assert len(daily) == 4
    assert daily[0].date == ref.index[2].date()
    assert daily[0].stock1_shares == 200


def test_value_conservation_on_random_walk():
    rng = np.random.default_rng(7)
    n = 400
    ref = make_series(np.round(100 + np.cumsum(rng.normal(0, 2, n)), 2))
    stock1 = make_series(np.round(50 * np.exp(np.cumsum(rng.normal(0, 0.02, n))), 2))
    stock2 = make_series(np.round(30 * np.exp(np.cumsum(rng.normal(0, 0.01, n))), 2))
    allocation = {
        MarketPhase.BULL: AllocationTarget(stock1=70.0, stock2=30.0),
        MarketPhase.BEAR: AllocationTarget(stock2=50.0, cash=50.0),
    }
    daily = _engine(allocation).run(ref, stock1, stock2, flat_mas(ref.index), 0)

    assert len(daily) > 0
    for s in daily:
        assert s.stock1_shares >= 0 and s.stock2_shares >= 0
        assert s.total_value == pytest.approx(s.cash + s.stock1_value + s.stock2_value, abs=0.02)
        assert s.stock1_value == pytest.approx(s.stock1_shares * s.stock1_price, abs=0.01)
        assert s.stock2_value == pytest.approx(s.stock2_shares * s.stock2_price, abs=0.01)


def test_snapshot_to_dict_keys():
    ref = make_series([110.0])
    snap, = _engine().run(ref, make_series([50.0]), make_series([20.0]), flat_mas(ref.index), 0)
    data = snap.to_dict()
    assert data["phaseKey"] == "bull"
    assert data["phase"] == "상승장"
    assert data["date"] == ref.index[0].date().isoformat()
    assert set(data) >= {"tqqqPrice", "stock1Value", "stock2Value", "cash", "totalValue", "returnRate"}


# --- Aggregators ---

def _snap(d: date, value: float = 100.0) -> DailySnapshot:
    return DailySnapshot(
        date=d, phase=MarketPhase.BULL, phase_label="상승장", tqqq_price=1.0,
        stock1_price=1.0, stock1_value=0.0, stock2_price=1.0, stock2_value=0.0,
        cash=value, total_value=value, return_rate=0.0,
    )


DAYS = [
    date(2021, 12, 30), date(2021, 12, 31),
    date(2022, 1, 3), date(2022, 1, 31),
    date(2022, 2, 1), date(2022, 2, 15),
    date(2023, 2, 1),
]


def test_monthly_keeps_month_ends_and_final():
    daily = [_snap(d) for d in DAYS]
    assert [s.date for s in monthly_results(daily)] == [
        date(2021, 12, 31), date(2022, 1, 31), date(2022, 2, 15), date(2023, 2, 1),
    ]


def test_monthly_distinguishes_same_month_in_different_years():
    daily = [_snap(date(2022, 2, 15)), _snap(date(2023, 2, 1))]
    assert len(monthly_results(daily)) == 2


def test_yearly_keeps_year_ends_and_final():
    daily = [_snap(d) for d in DAYS]
    assert [s.date for s in yearly_results(daily)] == [
        date(2021, 12, 31), date(2022, 2, 15), date(2023, 2, 1),
    ]


def test_rollups_are_idempotent_subsequences():
    daily = [_snap(d, 100.0 + i) for i, d in enumerate(DAYS)]
    for rollup in (monthly_results, yearly_results):
        once = rollup(daily)
        assert rollup(daily) == once
        assert rollup(once) == once
        positions = [daily.index(s) for s in once]
        assert positions == sorted(positions)
        assert once[-1] is daily[-1]


def test_rollups_of_empty_series():
    assert monthly_results([]) == []
    assert yearly_results([]) == []


# --- summarize ---

def test_summary_totals():
    first = _snap(date(2022, 1, 3), 10000.0)
    last = DailySnapshot(
        date=date(2022, 6, 30), phase=MarketPhase.BEAR, phase_label="하락장", tqqq_price=1.0,
        stock1_price=60.0, stock1_value=0.0, stock2_price=1.0, stock2_value=0.0,
        cash=12345.67, total_value=12345.67, return_rate=23.46,
    )
    first = DailySnapshot(**{**first.__dict__, "stock1_price": 40.0})
    summary = summarize([first, last], 10000.0)
    assert summary.final_value == 12345.67
    assert summary.total_return == 23.46
    assert summary.profit == 2345.67
    assert summary.stock1_price_return == 50.0
    assert summary.stock1_start_price == 40.0


# --- resolve_start_index ---

def _long_reference(n=1100):
    return make_series(np.linspace(50, 150, n), start="2019-01-01")


def test_start_index_is_ma_valid_point_for_early_request():
    ref = _long_reference()
    mas = compute_moving_averages(ref)
    idx = resolve_start_index(ref, ref, ref, mas, date(2000, 1, 1))
    assert idx == 999


def test_weekend_start_advances_to_next_trading_day():
    ref = _long_reference()
    mas = compute_moving_averages(ref)
    pos = next(i for i in range(1001, len(ref)) if ref.index[i].weekday() == 0)
    saturday = (ref.index[pos] - pd.Timedelta(days=2)).date()
    assert resolve_start_index(ref, ref, ref, mas, saturday) == pos


def test_start_index_waits_for_late_listed_asset():
    ref = _long_reference()
    mas = compute_moving_averages(ref)
    late = synchronize_series(ref.index, ref.iloc[1020:])
    assert resolve_start_index(ref, ref, late, mas, date(2000, 1, 1)) == 1020


def test_start_after_history_is_insufficient():
    ref = _long_reference()
    with pytest.raises(InsufficientHistoryError):
        resolve_start_index(ref, ref, ref, compute_moving_averages(ref), date(2030, 1, 1))


def test_asset_without_prices_is_unavailable():
    ref = _long_reference()
    zeros = pd.Series(0.0, index=ref.index)
    with pytest.raises(DataUnavailableError, match="XYZ"):
        resolve_start_index(ref, ref, zeros, compute_moving_averages(ref),
                            date(2000, 1, 1), "ABC", "XYZ")


def test_undefined_ma1000_is_insufficient():
    ref = _long_reference(999)
    with pytest.raises(InsufficientHistoryError):
        resolve_start_index(ref, ref, ref, compute_moving_averages(ref), date(2000, 1, 1))


# --- BacktestRequest ---

BODY = {
    "startDate": "2023-03-01",
    "endDate": "2023-12-29",
    "initialCash": "10000",
    "stock1Ticker": "qqq",
    "stock2Ticker": "schd",
    "allocation": {"bull": {"stock1": 100, "stock2": 0, "cash": 0},
                   "bear": {"stock1": 0, "stock2": 0, "cash": 100}},
    "maConfig": {"bull": {"ma1000": "any", "ma200": "above", "ma20": "any"},
                 "bear": {"ma1000": "any", "ma200": "below", "ma20": "any"}},
}


def test_request_from_dict():
    req = BacktestRequest.from_dict(BODY)
    assert req.start_date == date(2023, 3, 1)
    assert req.initial_cash == 10000.0
    assert req.stock1_ticker == "QQQ"
    assert req.reference_ticker == "TQQQ"
    assert set(req.rules) == {MarketPhase.BULL, MarketPhase.BEAR}
    assert req.allocation[MarketPhase.BEAR].cash == 100.0


@pytest.mark.parametrize("key", ["startDate", "endDate", "initialCash", "stock1Ticker", "stock2Ticker", "maConfig"])
def test_request_missing_field(key):
    body = {k: v for k, v in BODY.items() if k != key}
    with pytest.raises(InvalidRequestError):
        BacktestRequest.from_dict(body)


def test_request_bad_condition_tag():
    body = {**BODY, "maConfig": {"bull": {"ma200": "sideways"}}}
    with pytest.raises(InvalidRequestError):
        BacktestRequest.from_dict(body)


def test_request_start_after_end_is_invalid_range(today):
    req = BacktestRequest.from_dict({**BODY, "startDate": "2024-01-10", "endDate": "2024-01-02"})
    with pytest.raises(InvalidRangeError) as exc:
        req.validate(today)
    assert exc.value.status == BacktestStatus.INVALID_RANGE


def test_request_non_positive_cash(today):
    req = BacktestRequest.from_dict({**BODY, "initialCash": "-5"})
    with pytest.raises(InvalidRequestError):
        req.validate(today)


# --- BacktestPipeline ---

def _pipeline_data():
    ref = make_series(np.linspace(20, 80, 1200), start="2019-01-01", name="TQQQ")
    qqq = make_series(np.linspace(200, 400, 1200), start="2019-01-01", name="QQQ")
    schd = make_series(np.full(1200, 70.0), start="2019-01-01", name="SCHD")
    return {"TQQQ": ref, "QQQ": qqq, "SCHD": schd}


def test_pipeline_runs_end_to_end(today):
    data = _pipeline_data()
    ref = data["TQQQ"]
    start = ref.index[1100].date()
    req = BacktestRequest.from_dict({**BODY, "startDate": start.isoformat(),
                                     "endDate": ref.index[-1].date().isoformat()})
    result = BacktestPipeline(FakeAcquisition(data)).run(req, today=today)

    assert result.status == BacktestStatus.SUCCESS
    assert result.start_date == start
    assert result.end_date == ref.index[-1].date()
    assert result.data_points == 1200
    assert len(result.daily) == 100
    assert result.daily[0].total_value == 10000.0
    assert result.monthly[-1] == result.daily[-1]
    assert result.yearly[-1] == result.daily[-1]
    assert result.summary.final_value == result.daily[-1].total_value
    assert result.summary.stock1_price_return > 0

    payload = result.to_dict()
    assert payload["success"] is True
    assert len(payload["dailyResults"]) == 100
    assert result.years == pytest.approx(100 / 252)
    assert "100 days, 0.4 years" in format_backtest_report(result)


def test_pipeline_requests_lookback(today):
    data = _pipeline_data()
    fake = FakeAcquisition(data)
    req = BacktestRequest.from_dict({**BODY, "startDate": "2023-06-01", "endDate": "2023-12-29"})
    BacktestPipeline(fake).run(req, today=today)
    (tickers, start, end), = fake.calls
    assert tickers == ("TQQQ", "QQQ", "SCHD")
    assert (date(2023, 6, 1) - start).days == 1500


def test_pipeline_short_reference_is_insufficient(today):
    data = _pipeline_data()
    data["TQQQ"] = data["TQQQ"].iloc[:900]
    req = BacktestRequest.from_dict(BODY)
    with pytest.raises(InsufficientHistoryError, match="900"):
        BacktestPipeline(FakeAcquisition(data)).run(req, today=today)


def test_pipeline_without_matching_phase_has_no_simulable_days(today):
    # Rising reference never trades below its MA200, so a bear-only table never matches.
    req = BacktestRequest.from_dict({**BODY, "maConfig": {"bear": {"ma200": "below"}}})
    with pytest.raises(NoSimulableDaysError) as exc:
        BacktestPipeline(FakeAcquisition(_pipeline_data())).run(req, today=today)
    assert exc.value.status == BacktestStatus.NO_SIMULABLE_DAYS


def test_run_backtest_convenience():
    data = _pipeline_data()
    result = run_backtest(
        "2023-03-01", "2023-12-29", 5000, "qqq", "schd", DEFAULT_ALLOCATION,
        acquisition=FakeAcquisition(data),
    )
    assert result.stock1_ticker == "QQQ"
    assert result.reference_ticker == "TQQQ"
    assert result.daily[0].total_value == 5000.0
    assert result.daily[0].phase == MarketPhase.BULL
    assert result.daily[0].stock1_shares > 0
    assert result.end_date == data["TQQQ"].index[-1].date()
