"""账户回撤占用评估。"""

from __future__ import annotations

from shared.errors import MalformedInputError
from shared.models.models import AccountSnapshot, RiskAssessment
from shared.utils.parsing import parse_bool, parse_number


def _safe_number(value, ctx: str) -> float:
    try:
        return parse_number(value, ctx=ctx)
    except MalformedInputError:
        return 0.0


class RiskEvaluator:
    """根据账户快照计算回撤占用率与危险标记。

    规则（固定业务规则）：
    - 最大允许亏损 = 初始资金 * 10%；
    - 占用率 = clamp(亏损 / 最大允许亏损 * 100, 0, 100)；
    - 占用率 >= 100 或外部已标记危险 => 危险（两者取或，不覆盖外部标记）；
    - 权益底线 = 初始资金 * 90%，仅用于展示。
    """

    MAX_LOSS_PCT = 0.10
    EQUITY_FLOOR_PCT = 0.90

    def evaluate(self, snapshot: AccountSnapshot) -> RiskAssessment:
        flagged = parse_bool(snapshot.flagged_danger)
        daily_dd = _safe_number(snapshot.daily_drawdown_pct, "daily_drawdown_pct")
        cumulative_dd = _safe_number(snapshot.cumulative_drawdown_pct, "cumulative_drawdown_pct")

        try:
            size = parse_number(snapshot.starting_size, ctx="starting_size")
            equity = parse_number(snapshot.equity, ctx="equity")
        except MalformedInputError:
            # 数据有问题时按“零占用”展示，保持外部危险标记
            size = _safe_number(snapshot.starting_size, "starting_size")
            return RiskAssessment(
                account_id=str(snapshot.account_id),
                loss_amount=0.0,
                max_allowed_loss=size * self.MAX_LOSS_PCT,
                usage_pct=0.0,
                is_danger=flagged,
                max_loss_limit=size * self.EQUITY_FLOOR_PCT,
                daily_drawdown_pct=daily_dd,
                cumulative_drawdown_pct=cumulative_dd,
            )

        max_allowed_loss = size * self.MAX_LOSS_PCT
        loss_amount = size - equity
        if max_allowed_loss > 0:
            usage_pct = min(max(loss_amount / max_allowed_loss * 100, 0.0), 100.0)
        else:
            usage_pct = 0.0

        return RiskAssessment(
            account_id=str(snapshot.account_id),
            loss_amount=loss_amount,
            max_allowed_loss=max_allowed_loss,
            usage_pct=usage_pct,
            is_danger=(max_allowed_loss > 0 and usage_pct >= 100) or flagged,
            max_loss_limit=size * self.EQUITY_FLOOR_PCT,
            daily_drawdown_pct=daily_dd,
            cumulative_drawdown_pct=cumulative_dd,
        )
