"""账户规则检查（最大回撤 / 日内回撤 / 异常暴利 / 达标）。"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from shared.config.schema import RulesConfig


class Verdict(str, Enum):
    MAX_DRAWDOWN = "MAX_DRAWDOWN"
    DAILY_DRAWDOWN = "DAILY_DRAWDOWN"
    PROFIT_MANIPULATION = "PROFIT_MANIPULATION"
    OBJECTIVE_MET = "OBJECTIVE_MET"

    @property
    def fails_account(self) -> bool:
        return self is not Verdict.OBJECTIVE_MET


@dataclass(frozen=True)
class RuleResult:
    verdict: Verdict
    reason: str


class AccountRuleChecker:
    """按顺序检查账户规则，返回第一条命中的结果；都未命中返回 None。

    检查顺序：最大回撤 -> 日内回撤 -> 异常暴利 -> 达标（仅 active 账户）。
    """

    def __init__(self, rules: RulesConfig | None = None):
        self.rules = rules or RulesConfig()

    def check(
        self,
        *,
        size: float,
        equity: float,
        daily_start: float | None = None,
        status: str = "active",
        total_trades: int = 0,
    ) -> RuleResult | None:
        r = self.rules
        daily_start = daily_start or size

        breach_max = size * (1 - r.max_drawdown_pct)
        if equity <= breach_max:
            return RuleResult(
                Verdict.MAX_DRAWDOWN,
                f"Equity {equity:.2f} below limit {breach_max:.2f} ({r.max_drawdown_pct * 100:g}%)",
            )

        breach_daily = daily_start * (1 - r.daily_drawdown_pct)
        if equity <= breach_daily:
            return RuleResult(
                Verdict.DAILY_DRAWDOWN,
                f"Equity {equity:.2f} below daily limit {breach_daily:.2f} "
                f"({r.daily_drawdown_pct * 100:g}% of {daily_start:.2f})",
            )

        spike = daily_start * (1 + r.profit_spike_pct)
        if equity >= spike:
            return RuleResult(
                Verdict.PROFIT_MANIPULATION,
                f"Unrealistic profit spike. Equity {equity:.2f} > limit {spike:.2f}",
            )

        if status == "active" and size > 0:
            profit_pct = (equity - size) / size
            if profit_pct >= r.profit_target_pct and total_trades >= r.min_trades:
                return RuleResult(
                    Verdict.OBJECTIVE_MET,
                    f"Profit {profit_pct * 100:.2f}% >= target {r.profit_target_pct * 100:g}% "
                    f"with {total_trades} trades",
                )
        return None
