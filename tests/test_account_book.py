import pytest

from market_data.aggregator import CandleAggregator
from risk.accounts import AccountBook
from risk.rules import AccountRuleChecker, Verdict
from shared.config.schema import AccountConfig, PositionConfig, RulesConfig
from shared.models.models import Tick


@pytest.fixture
def book():
    b = AccountBook()
    b.add_account("A1", 100000)
    b.open_position("A1", "NIFTY", "buy", 22000, lots=2)
    return b


def test_equity_includes_floating_pnl(book):
    assert book.equity("A1") == 100000  # 无最新价时不计浮盈
    book.update_price("NIFTY", 22050)
    assert book.equity("A1") == 105000


def test_snapshot_drawdowns_and_danger_flag(book):
    book.update_price("NIFTY", 21900)  # -100 * 2 * 50 = -10000
    snap = book.snapshot("A1")

    assert snap.equity == 90000
    assert snap.cumulative_drawdown_pct == pytest.approx(10.0)
    assert snap.daily_drawdown_pct == pytest.approx(10.0)
    assert snap.flagged_danger is True


def test_small_loss_is_not_flagged(book):
    book.update_price("NIFTY", 21990)  # -1000
    snap = book.snapshot("A1")
    assert snap.cumulative_drawdown_pct == pytest.approx(1.0)
    assert snap.flagged_danger is False


def test_reset_daily_moves_baseline(book):
    book.update_price("NIFTY", 21980)  # -2000
    book.reset_daily()
    snap = book.snapshot("A1")
    assert snap.daily_drawdown_pct == pytest.approx(0.0)
    assert snap.cumulative_drawdown_pct == pytest.approx(2.0)


def test_book_follows_aggregator_closes(book):
    agg = CandleAggregator(period_seconds=1)
    agg.add_listener(book.on_candle)
    agg.ingest(Tick(symbol="NIFTY", ts=1, price=22010.0))
    assert book.equity("A1") == 101000


def test_close_position_realizes_pnl(book):
    pos = book.accounts["A1"].positions[0]
    pnl = book.close_position("A1", pos.id, price=22100)
    assert pnl == 10000
    assert book.accounts["A1"].balance == 110000
    assert book.accounts["A1"].positions == []
    with pytest.raises(KeyError):
        book.close_position("A1", pos.id)


def test_snapshots_only_cover_monitored_accounts(book):
    book.add_account("A2", 50000, status="failed")
    book.add_account("A0", 25000, status="funded")
    assert [s.account_id for s in book.snapshots()] == ["A0", "A1"]


def test_invalid_operations(book):
    with pytest.raises(ValueError):
        book.add_account("A1", 1)
    with pytest.raises(ValueError):
        book.open_position("A1", "NIFTY", "hold", 1)
    with pytest.raises(KeyError):
        book.equity("missing")


def test_from_config():
    cfg = [
        AccountConfig(
            id="X",
            size=50000,
            positions=[PositionConfig(symbol="BANKNIFTY", side="sell", entry_price=46000, lots=3)],
        )
    ]
    b = AccountBook.from_config(cfg)
    b.update_price("BANKNIFTY", 45900)
    assert b.equity("X") == 50000 + 100 * 3 * 15
    assert b.accounts["X"].total_trades == 1


def test_apply_rules_fails_account_and_liquidates(book):
    book.update_price("NIFTY", 21950)  # -5000 -> 95000 <= 97000
    results = book.apply_rules(AccountRuleChecker())

    assert results[0][0] == "A1"
    assert results[0][1].verdict is Verdict.MAX_DRAWDOWN
    acc = book.accounts["A1"]
    assert acc.status == "failed"
    assert acc.positions == []
    assert acc.balance == 95000
    assert book.snapshots() == []


def test_apply_rules_funds_account_on_objective():
    b = AccountBook()
    b.add_account("A1", 100000)
    b.open_position("A1", "NIFTY", "buy", 22000, lots=1)
    b.open_position("A1", "NIFTY", "buy", 22000, lots=1)
    b.update_price("NIFTY", 22090)  # +9000 -> 9%

    results = b.apply_rules(AccountRuleChecker())
    assert results[0][1].verdict is Verdict.OBJECTIVE_MET
    assert b.accounts["A1"].status == "funded"
    assert b.apply_rules(AccountRuleChecker()) == []


class TestAccountRuleChecker:
    def test_no_verdict_for_healthy_account(self):
        assert AccountRuleChecker().check(size=100000, equity=100500) is None

    def test_max_drawdown(self):
        r = AccountRuleChecker().check(size=100000, equity=96000)
        assert r.verdict is Verdict.MAX_DRAWDOWN
        assert "96000.00" in r.reason

    def test_daily_drawdown_uses_daily_start(self):
        r = AccountRuleChecker().check(size=100000, equity=101900, daily_start=104000)
        assert r.verdict is Verdict.DAILY_DRAWDOWN

    def test_profit_spike(self):
        r = AccountRuleChecker().check(size=100000, equity=150000)
        assert r.verdict is Verdict.PROFIT_MANIPULATION
        assert r.verdict.fails_account

    def test_objective_requires_min_trades_and_active(self):
        checker = AccountRuleChecker()
        assert checker.check(size=100000, equity=108000, total_trades=1) is None
        assert checker.check(size=100000, equity=108000, total_trades=2).verdict is Verdict.OBJECTIVE_MET
        assert checker.check(size=100000, equity=108000, total_trades=5, status="funded") is None

    def test_custom_limits(self):
        checker = AccountRuleChecker(RulesConfig(max_drawdown_pct=0.10, daily_drawdown_pct=0.10))
        assert checker.check(size=100000, equity=95000) is None
        assert checker.check(size=100000, equity=89000).verdict is Verdict.MAX_DRAWDOWN


# 2024-01-01 18:00 UTC = 23:30 IST；IST 午夜 = 18:30 UTC
UTC_1800 = 1704132000
UTC_1840 = UTC_1800 + 40 * 60


def test_roll_day_resets_baseline_on_new_trading_day(book):
    assert book.roll_day(UTC_1800, 330) is False  # 首次只记录交易日
    book.update_price("NIFTY", 21950)  # -5000
    assert book.roll_day(UTC_1800 + 600, 330) is False
    assert book.accounts["A1"].daily_start_balance == 100000

    assert book.roll_day(UTC_1840, 330) is True
    assert book.accounts["A1"].daily_start_balance == 95000
    assert book.snapshot("A1").daily_drawdown_pct == pytest.approx(0.0)
    assert book.roll_day(UTC_1840 + 60, 330) is False


def test_roll_day_depends_on_offset(book):
    assert book.roll_day(UTC_1800, 0) is False
    assert book.roll_day(UTC_1840, 0) is False  # UTC 仍是同一天


def test_roll_day_ignores_clock_going_backwards(book):
    book.roll_day(UTC_1840, 330)
    assert book.roll_day(UTC_1800, 330) is False
