"""核心数据结构：Tick/Candle/Position/AccountSnapshot/RiskAssessment。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Tick:
    """市场 Tick（最新成交价 LTP）。

    ts 为 unix 秒（整数），K 线聚合按它对齐周期。
    """
    symbol: str
    ts: int
    price: float


@dataclass
class Candle:
    """K 线数据。

    当前 K 线会被原地修改，直到周期结束后冻结进入历史。
    始终满足 low <= min(open, close) <= max(open, close) <= high。
    """
    symbol: str
    start_ts: int
    open: float
    high: float
    low: float
    close: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "start_ts": self.start_ts,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
        }


@dataclass(frozen=True)
class Position:
    """持仓快照（只读）。

    字段值来自外部账户系统，可能是字符串或 None，估值时再做容错解析。
    """
    id: str
    account_id: str
    symbol: str
    side: str                 # "buy" / "sell"
    entry_price: Any
    lots: Any = 1


@dataclass(frozen=True)
class AccountSnapshot:
    """账户快照（外部定期提供，核心只读）。"""
    account_id: str
    starting_size: Any
    equity: Any
    daily_drawdown_pct: Any = 0.0
    cumulative_drawdown_pct: Any = 0.0
    flagged_danger: bool = False   # 外部账户系统给出的危险标记（不透明输入）


@dataclass(frozen=True)
class RiskAssessment:
    """单个账户的风险评估结果（派生数据，不落库）。"""
    account_id: str
    loss_amount: float
    max_allowed_loss: float
    usage_pct: float
    is_danger: bool
    max_loss_limit: float          # 权益底线，低于它账户视为失败
    daily_drawdown_pct: float = 0.0
    cumulative_drawdown_pct: float = 0.0
