"""内存账户簿：模拟账户管理系统，向风控循环提供账户快照。

权益 = 已实现余额 + 全部持仓浮动盈亏（按最新价估值）。
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field

from market_data.aggregator import CandleUpdate
from risk.rules import AccountRuleChecker, RuleResult, Verdict
from risk.valuation import PositionValuator
from shared.models.models import AccountSnapshot, Position
from utils.logging import setup_logger

# 接近违规的预警线（百分比）
DANGER_CUMULATIVE_DD_PCT = 8.0
DANGER_DAILY_DD_PCT = 4.0

MONITORED_STATUSES = {"active", "funded"}
SECONDS_PER_DAY = 86400


@dataclass
class Account:
    """账户状态。"""
    id: str
    size: float
    balance: float
    daily_start_balance: float
    status: str = "active"
    positions: list[Position] = field(default_factory=list)
    total_trades: int = 0


class AccountBook:
    """账户与持仓的内存存储。

    Parameters
    ----------
    valuator:
        持仓估值器。
    logger:
        可选 logger。
    """

    def __init__(self, valuator: PositionValuator | None = None, logger=None):
        self.valuator = valuator or PositionValuator()
        self.logger = logger or setup_logger("accounts")
        self.accounts: dict[str, Account] = {}
        self.last_prices: dict[str, float] = {}
        self._ids = itertools.count(1)
        self._trading_day: int | None = None

    @classmethod
    def from_config(cls, accounts_cfg, **kwargs) -> "AccountBook":
        """从 `AccountConfig` 列表构建账户簿。"""
        book = cls(**kwargs)
        for acc in accounts_cfg:
            book.add_account(acc.id, acc.size, balance=acc.balance, status=acc.status)
            for pos in acc.positions:
                book.open_position(acc.id, pos.symbol, pos.side, pos.entry_price, pos.lots)
        return book

    def add_account(self, account_id: str, size: float, *, balance: float | None = None, status: str = "active") -> Account:
        if account_id in self.accounts:
            raise ValueError(f"Account already exists: {account_id}")
        bal = float(size if balance is None else balance)
        acc = Account(id=account_id, size=float(size), balance=bal, daily_start_balance=bal, status=status)
        self.accounts[account_id] = acc
        return acc

    def _get(self, account_id: str) -> Account:
        try:
            return self.accounts[account_id]
        except KeyError:
            raise KeyError(f"Unknown account: {account_id}") from None

    def open_position(self, account_id: str, symbol: str, side: str, entry_price: float, lots: int = 1) -> Position:
        acc = self._get(account_id)
        if acc.status not in MONITORED_STATUSES:
            raise ValueError(f"Account {account_id} is {acc.status}, cannot open positions")
        if side not in {"buy", "sell"}:
            raise ValueError(f"Invalid side: {side}")
        pos = Position(
            id=f"P{next(self._ids)}",
            account_id=account_id,
            symbol=symbol,
            side=side,
            entry_price=float(entry_price),
            lots=int(lots),
        )
        acc.positions.append(pos)
        acc.total_trades += 1
        return pos

    def close_position(self, account_id: str, position_id: str, price: float | None = None) -> float:
        """平仓并把盈亏计入余额；price 缺省时用最新价。返回已实现盈亏。"""
        acc = self._get(account_id)
        for i, pos in enumerate(acc.positions):
            if pos.id == position_id:
                exit_price = price if price is not None else self.last_prices.get(pos.symbol)
                pnl = self.valuator.valuate(pos, exit_price)
                acc.balance += pnl
                del acc.positions[i]
                return pnl
        raise KeyError(f"Unknown position {position_id} for account {account_id}")

    def update_price(self, symbol: str, price: float) -> None:
        self.last_prices[symbol] = float(price)

    def on_candle(self, update: CandleUpdate) -> None:
        """CandleAggregator 观察者：用最新收盘价更新估值价格。"""
        self.update_price(update.candle.symbol, update.candle.close)

    def equity(self, account_id: str) -> float:
        acc = self._get(account_id)
        return acc.balance + self.valuator.floating_pnl(acc.positions, self.last_prices)

    def snapshot(self, account_id: str) -> AccountSnapshot:
        acc = self._get(account_id)
        equity = self.equity(account_id)
        cumulative_dd = (acc.size - equity) / acc.size * 100 if acc.size else 0.0
        daily_start = acc.daily_start_balance or acc.balance
        daily_dd = (daily_start - equity) / daily_start * 100 if daily_start else 0.0
        return AccountSnapshot(
            account_id=acc.id,
            starting_size=acc.size,
            equity=equity,
            daily_drawdown_pct=daily_dd,
            cumulative_drawdown_pct=cumulative_dd,
            flagged_danger=cumulative_dd > DANGER_CUMULATIVE_DD_PCT or daily_dd > DANGER_DAILY_DD_PCT,
        )

    def snapshots(self) -> list[AccountSnapshot]:
        """active/funded 账户的快照，按账户 id 排序。"""
        return [
            self.snapshot(acc_id)
            for acc_id in sorted(self.accounts)
            if self.accounts[acc_id].status in MONITORED_STATUSES
        ]

    def reset_daily(self) -> None:
        """日切：把日内基准重置为当前权益（按市价）。"""
        for acc in self.accounts.values():
            if acc.status in MONITORED_STATUSES:
                acc.daily_start_balance = self.equity(acc.id)

    def roll_day(self, ts: float, utc_offset_minutes: int = 0) -> bool:
        """按 ts 所在的交易日（UTC + 偏移）检查日切，跨日时调用 reset_daily。

        第一次调用只记录当前交易日，不重置。返回本次是否发生了日切。
        """
        day = (int(ts) + utc_offset_minutes * 60) // SECONDS_PER_DAY
        if self._trading_day is None:
            self._trading_day = day
            return False
        if day <= self._trading_day:
            return False
        self._trading_day = day
        self.reset_daily()
        self.logger.info("[RISK] Daily reset (trading day %d)", day)
        return True

    def apply_rules(self, checker: AccountRuleChecker) -> list[tuple[str, RuleResult]]:
        """逐账户检查规则：违规则强平并置为 failed，达标则置为 funded。"""
        results: list[tuple[str, RuleResult]] = []
        for acc in self.accounts.values():
            if acc.status not in MONITORED_STATUSES:
                continue
            result = checker.check(
                size=acc.size,
                equity=self.equity(acc.id),
                daily_start=acc.daily_start_balance,
                status=acc.status,
                total_trades=acc.total_trades,
            )
            if result is None:
                continue
            if result.verdict.fails_account:
                self._liquidate(acc)
                acc.status = "failed"
                self.logger.warning("[RISK] Failing account %s: %s - %s", acc.id, result.verdict.value, result.reason)
            elif result.verdict is Verdict.OBJECTIVE_MET:
                acc.status = "funded"
                self.logger.info("[RISK] Account %s passed: %s", acc.id, result.reason)
            results.append((acc.id, result))
        return results

    def _liquidate(self, acc: Account) -> None:
        for pos in list(acc.positions):
            self.close_position(acc.id, pos.id)
