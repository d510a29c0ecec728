import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from market_data.aggregator import CandleAggregator, CandleMutated, NewCandle, period_key
from shared.errors import MalformedInputError, StaleTickError
from shared.models.models import Candle, Tick

# 对齐到 60 秒的基准时间
BASE = 28333333 * 60

prices = st.floats(min_value=0.01, max_value=1e6, allow_nan=False, allow_infinity=False)


def _tick(ts: int, price: float, symbol: str = "NIFTY") -> Tick:
    return Tick(symbol=symbol, ts=ts, price=price)


def test_period_key_aligns_to_period():
    assert period_key(BASE + 59, 60) == BASE
    assert period_key(BASE + 60, 60) == BASE + 60
    assert period_key(1234, 1) == 1234


def test_first_tick_opens_candle_with_flat_ohlc():
    agg = CandleAggregator(period_seconds=60)
    update = agg.ingest(_tick(BASE + 5, 22000.0))

    assert isinstance(update, NewCandle)
    c = update.candle
    assert c.start_ts == BASE
    assert c.open == c.high == c.low == c.close == 22000.0


def test_ticks_within_period_mutate_current_candle():
    agg = CandleAggregator(period_seconds=60)
    agg.ingest(_tick(BASE, 100.0))
    agg.ingest(_tick(BASE + 10, 105.0))
    update = agg.ingest(_tick(BASE + 20, 98.0))

    assert isinstance(update, CandleMutated)
    c = update.candle
    assert (c.open, c.high, c.low, c.close) == (100.0, 105.0, 98.0, 98.0)
    assert len(agg.get_history("NIFTY")) == 1


def test_new_period_retires_previous_candle():
    agg = CandleAggregator(period_seconds=60)
    agg.ingest(_tick(BASE, 100.0))
    agg.ingest(_tick(BASE + 30, 101.0))
    update = agg.ingest(_tick(BASE + 61, 102.0))

    assert isinstance(update, NewCandle)
    history = agg.get_history("NIFTY")
    assert [c.start_ts for c in history] == [BASE, BASE + 60]
    assert history[0].close == 101.0
    assert history[1].open == 102.0


def test_history_is_ordered_with_gaps():
    agg = CandleAggregator(period_seconds=60)
    for i, offset in enumerate([0, 60, 300, 301, 900]):
        agg.ingest(_tick(BASE + offset, 100.0 + i))

    starts = [c.start_ts for c in agg.get_history("NIFTY")]
    assert starts == sorted(starts)
    assert starts == [BASE, BASE + 60, BASE + 300, BASE + 900]


def test_stale_tick_is_rejected_without_side_effects():
    agg = CandleAggregator(period_seconds=60)
    seen = []
    agg.add_listener(seen.append)
    agg.ingest(_tick(BASE + 120, 100.0))
    before = agg.get_history("NIFTY")

    with pytest.raises(StaleTickError) as exc:
        agg.ingest(_tick(BASE + 59, 1.0))

    assert exc.value.current_start == BASE + 120
    assert agg.get_history("NIFTY") == before
    assert len(seen) == 1


def test_symbols_are_aggregated_independently():
    agg = CandleAggregator(period_seconds=1)
    agg.ingest(_tick(100, 21500.0, "NIFTY"))
    agg.ingest(_tick(100, 46000.0, "BANKNIFTY"))
    agg.ingest(_tick(101, 21501.0, "NIFTY"))

    assert len(agg.get_history("NIFTY")) == 2
    assert len(agg.get_history("BANKNIFTY")) == 1
    assert agg.symbols() == ["BANKNIFTY", "NIFTY"]
    assert agg.get_history("UNKNOWN") == []


def test_emitted_candles_are_copies():
    agg = CandleAggregator(period_seconds=60)
    first = agg.ingest(_tick(BASE, 100.0)).candle
    agg.ingest(_tick(BASE + 1, 110.0))

    assert first.close == 100.0
    assert agg.current("NIFTY").close == 110.0

    snapshot = agg.get_history("NIFTY")
    snapshot[0].close = -1.0
    assert agg.current("NIFTY").close == 110.0


def test_listener_failure_does_not_break_ingest():
    agg = CandleAggregator(period_seconds=60)
    seen = []

    def broken(update):
        raise RuntimeError("boom")

    agg.add_listener(broken)
    agg.add_listener(seen.append)
    agg.ingest(_tick(BASE, 100.0))

    assert len(seen) == 1
    assert agg.current("NIFTY") is not None


def test_max_history_caps_retired_candles():
    agg = CandleAggregator(period_seconds=1, max_history=3)
    for ts in range(10):
        agg.ingest(_tick(ts, 100.0 + ts))

    history = agg.get_history("NIFTY")
    # 3 根已冻结 + 1 根当前
    assert [c.start_ts for c in history] == [6, 7, 8, 9]


def test_seed_history_then_live_ticks_continue():
    agg = CandleAggregator(period_seconds=60)
    seeded = [
        Candle(symbol="NIFTY", start_ts=BASE + 60, open=2, high=3, low=1, close=2.5),
        Candle(symbol="NIFTY", start_ts=BASE, open=1, high=2, low=0.5, close=1.5),
        Candle(symbol="BANKNIFTY", start_ts=BASE, open=9, high=9, low=9, close=9),
    ]
    assert agg.seed_history("NIFTY", seeded) == 2

    update = agg.ingest(_tick(BASE + 70, 4.0))
    assert isinstance(update, CandleMutated)
    assert update.candle.high == 4.0

    with pytest.raises(StaleTickError):
        agg.ingest(_tick(BASE + 10, 1.0))
    with pytest.raises(ValueError):
        agg.seed_history("NIFTY", seeded)


def test_history_frame_columns():
    agg = CandleAggregator(period_seconds=1)
    agg.ingest(_tick(10, 1.0))
    agg.ingest(_tick(11, 2.0))

    df = agg.history_frame("NIFTY")
    assert list(df.columns) == ["start_ts", "open", "high", "low", "close"]
    assert df["start_ts"].tolist() == [10, 11]


def test_invalid_period_rejected():
    with pytest.raises(ValueError):
        CandleAggregator(period_seconds=0)


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf"), None, "abc"])
def test_non_finite_price_is_rejected_without_side_effects(bad):
    agg = CandleAggregator(period_seconds=60)
    seen = []
    agg.add_listener(seen.append)
    agg.ingest(_tick(BASE, 22000.0))

    with pytest.raises(MalformedInputError):
        agg.ingest(_tick(BASE + 1, bad))
    with pytest.raises(MalformedInputError):
        agg.ingest(_tick(BASE + 120, bad, "BANKNIFTY"))

    c = agg.current("NIFTY")
    assert (c.open, c.high, c.low, c.close) == (22000.0, 22000.0, 22000.0, 22000.0)
    assert agg.symbols() == ["NIFTY"]
    assert len(seen) == 1


def test_seed_history_skips_malformed_bars():
    agg = CandleAggregator(period_seconds=60)
    seeded = [
        Candle(symbol="NIFTY", start_ts=BASE, open=1, high=2, low=0.5, close=1.5),
        Candle(symbol="NIFTY", start_ts=BASE + 60, open=float("nan"), high=3, low=1, close=2),
        Candle(symbol="NIFTY", start_ts=BASE + 120, open=2, high=float("inf"), low=1, close=2),
    ]
    assert agg.seed_history("NIFTY", seeded) == 1
    assert agg.current("NIFTY").close == 1.5


@given(seq=st.lists(st.tuples(st.integers(min_value=0, max_value=59), prices), min_size=1, max_size=60))
@settings(max_examples=200)
def test_ohlc_invariant_holds_for_any_price_path(seq):
    agg = CandleAggregator(period_seconds=60)
    for offset, price in seq:
        c = agg.ingest(_tick(BASE + offset, price)).candle
        assert c.low <= c.open <= c.high
        assert c.low <= c.close <= c.high
    assert len(agg.get_history("NIFTY")) == 1


@given(first=prices, dup=prices)
@settings(max_examples=200)
def test_duplicate_tick_is_idempotent(first, dup):
    once = CandleAggregator(period_seconds=60)
    twice = CandleAggregator(period_seconds=60)
    for agg in (once, twice):
        agg.ingest(_tick(BASE, first))
        agg.ingest(_tick(BASE + 1, dup))
    twice.ingest(_tick(BASE + 1, dup))

    a, b = once.current("NIFTY"), twice.current("NIFTY")
    assert (a.high, a.low, a.close) == (b.high, b.low, b.close)


@given(steps=st.lists(st.integers(min_value=1, max_value=5), min_size=1, max_size=30))
@settings(max_examples=100)
def test_increasing_periods_give_increasing_history(steps):
    agg = CandleAggregator(period_seconds=60)
    ts = BASE
    for step in steps:
        ts += step * 60
        agg.ingest(_tick(ts, 100.0))

    starts = [c.start_ts for c in agg.get_history("NIFTY")]
    assert len(starts) == len(steps)
    assert all(b - a >= 60 for a, b in zip(starts, starts[1:]))
