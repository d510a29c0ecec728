"""持仓浮动盈亏估值。

实时展示路径上的估值永不抛异常：输入有问题时返回 0，而不是把错误抛给调用方。
"""

from __future__ import annotations

from typing import Iterable, Mapping

from shared.errors import MalformedInputError
from shared.models.models import Position
from shared.utils.parsing import parse_lots, parse_number

# 交易所合约乘数：BANKNIFTY 15，NIFTY 50，其它 1
BANKNIFTY_MULTIPLIER = 15
NIFTY_MULTIPLIER = 50


def contract_multiplier(symbol: str | None) -> int:
    """按品种名匹配合约乘数（固定规则，不可配置）。"""
    name = (symbol or "").upper()
    if "BANKNIFTY" in name:
        return BANKNIFTY_MULTIPLIER
    if "NIFTY" in name:
        return NIFTY_MULTIPLIER
    return 1


class PositionValuator:
    """按最新价计算持仓的带符号浮动盈亏（货币单位）。"""

    def valuate(self, position: Position, current_price) -> float:
        """单个持仓的浮动盈亏。

        buy:  (current - entry) * lots * multiplier
        sell: (entry - current) * lots * multiplier

        entry/current 缺失、无法解析或为 0，以及未知方向，均返回 0.0。
        """
        try:
            entry = parse_number(position.entry_price, ctx="entry_price")
            price = parse_number(current_price, ctx="current_price")
        except MalformedInputError:
            return 0.0
        if entry == 0 or price == 0:
            return 0.0

        qty = parse_lots(position.lots) * contract_multiplier(position.symbol)
        side = str(position.side or "").strip().lower()
        if side == "buy":
            return (price - entry) * qty
        if side == "sell":
            return (entry - price) * qty
        return 0.0

    def floating_pnl(self, positions: Iterable[Position], last_prices: Mapping[str, float]) -> float:
        """多个持仓的浮动盈亏合计；没有最新价的品种跳过。"""
        pnl = 0.0
        for pos in positions:
            last = last_prices.get(pos.symbol)
            if last is None:
                continue
            pnl += self.valuate(pos, last)
        return pnl
