"""核心异常定义。

这里的异常都不是致命的：最坏情况是“数据陈旧但仍可展示”，而不是让监控循环崩溃。
"""

from __future__ import annotations


class CoreError(Exception):
    """所有核心异常的基类。"""


class StaleTickError(CoreError):
    """Tick 所属周期早于当前 K 线周期，被拒绝（无状态变化）。"""

    def __init__(self, symbol: str, period_start: int, current_start: int):
        self.symbol = symbol
        self.period_start = period_start
        self.current_start = current_start
        super().__init__(
            f"Stale tick for {symbol}: period {period_start} < current candle {current_start}"
        )


class MalformedInputError(CoreError, ValueError):
    """持仓/快照里的数值字段无法解析。

    只在解析辅助函数中抛出；估值与风控评估会捕获并回退到安全默认值。
    """


class SnapshotFetchError(CoreError):
    """账户快照拉取失败（网络错误/超时/HTTP 错误）。"""
