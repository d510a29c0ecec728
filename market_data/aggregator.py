"""Tick -> K 线聚合。

上游只推送最新成交价（LTP），所以 high/low/close 由这里自行重建；
周期内第一笔 Tick 同时决定 open/high/low/close，不尝试从更细粒度恢复 open。
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Union

import pandas as pd

from market_data.models import Candle, Tick
from shared.errors import MalformedInputError, StaleTickError
from shared.utils.parsing import parse_number
from utils.logging import setup_logger


@dataclass(frozen=True)
class NewCandle:
    """新周期开启，candle 为新 K 线的快照。"""
    candle: Candle


@dataclass(frozen=True)
class CandleMutated:
    """当前 K 线被更新，candle 为更新后的快照。"""
    candle: Candle


CandleUpdate = Union[NewCandle, CandleMutated]
CandleListener = Callable[[CandleUpdate], None]


def period_key(ts: int, period_seconds: int) -> int:
    """把时间戳对齐到周期起点：floor(ts / period) * period。"""
    return (int(ts) // period_seconds) * period_seconds


class CandleAggregator:
    """按品种维护“当前 K 线”，并输出新建/更新事件。

    Parameters
    ----------
    period_seconds:
        聚合周期（秒），默认 1 秒。
    max_history:
        每个品种保留的已冻结 K 线数量上限；None 表示不限。
    logger:
        可选 logger。

    Notes
    -----
    `ingest` 是同步调用，在单线程事件循环中天然按品种串行，无需加锁。
    当前 K 线 map 只由本类修改；对外发出的都是副本。
    """

    def __init__(self, period_seconds: int = 1, max_history: int | None = None, logger=None):
        if int(period_seconds) <= 0:
            raise ValueError("period_seconds must be positive")
        self.period_seconds = int(period_seconds)
        self.max_history = max_history
        self.logger = logger or setup_logger("aggregator")

        self._current: dict[str, Candle] = {}
        self._history: dict[str, deque[Candle]] = {}
        self._listeners: list[CandleListener] = []

    def add_listener(self, listener: CandleListener) -> None:
        """注册 K 线更新观察者。"""
        self._listeners.append(listener)

    def remove_listener(self, listener: CandleListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def ingest(self, tick: Tick) -> CandleUpdate:
        """消费一笔 Tick。

        Returns
        -------
        CandleUpdate
            NewCandle（开启新周期）或 CandleMutated（周期内更新）。

        Raises
        ------
        StaleTickError
            Tick 所属周期早于当前 K 线，拒绝且不改变任何状态。
        MalformedInputError
            价格不是有限数值（NaN/inf/无法解析），同样拒绝且不改变状态。
        """
        try:
            price = parse_number(tick.price, ctx="price")
        except MalformedInputError:
            self.logger.debug("Reject tick %s ts=%s with bad price %r", tick.symbol, tick.ts, tick.price)
            raise
        key = period_key(tick.ts, self.period_seconds)
        current = self._current.get(tick.symbol)

        if current is not None and key < current.start_ts:
            self.logger.debug(
                "Reject stale tick %s ts=%s (period %s < %s)", tick.symbol, tick.ts, key, current.start_ts
            )
            raise StaleTickError(tick.symbol, key, current.start_ts)

        if current is None or key > current.start_ts:
            if current is not None:
                self._retire(current)
            candle = Candle(symbol=tick.symbol, start_ts=key, open=price, high=price, low=price, close=price)
            self._current[tick.symbol] = candle
            update: CandleUpdate = NewCandle(replace(candle))
        else:
            current.close = price
            if price > current.high:
                current.high = price
            if price < current.low:
                current.low = price
            update = CandleMutated(replace(current))

        self._notify(update)
        return update

    def current(self, symbol: str) -> Candle | None:
        """当前 K 线快照（副本）。"""
        candle = self._current.get(symbol)
        return replace(candle) if candle is not None else None

    def get_history(self, symbol: str) -> list[Candle]:
        """返回已冻结 K 线 + 当前 K 线，按 start_ts 升序。

        每次调用都返回新的列表（副本），可重复遍历。
        """
        out = [replace(c) for c in self._history.get(symbol, ())]
        current = self._current.get(symbol)
        if current is not None:
            out.append(replace(current))
        return out

    def history_frame(self, symbol: str) -> pd.DataFrame:
        """以 DataFrame 形式导出历史 K 线（列：start_ts/open/high/low/close）。"""
        rows = [c.to_dict() for c in self.get_history(symbol)]
        df = pd.DataFrame(rows, columns=["symbol", "start_ts", "open", "high", "low", "close"])
        return df.drop(columns=["symbol"])

    def symbols(self) -> list[str]:
        return sorted(self._current)

    def seed_history(self, symbol: str, candles: Iterable[Candle]) -> int:
        """用历史 K 线（如 TickSource.history）预热某个品种。

        只能在该品种收到第一笔 Tick 之前调用；最后一根 K 线成为当前 K 线，
        之后的实时 Tick 若落在同一周期会继续更新它。

        Returns
        -------
        int
            实际载入的 K 线数量（同一周期重复的只保留最后一根）。
        """
        if symbol in self._current:
            raise ValueError(f"Cannot seed history for {symbol}: live candles already exist")

        by_start: dict[int, Candle] = {}
        skipped = 0
        for c in candles:
            if c.symbol != symbol:
                continue
            try:
                o, hi, lo, cl = (parse_number(v, ctx=f"{symbol} bar") for v in (c.open, c.high, c.low, c.close))
            except MalformedInputError:
                skipped += 1
                continue
            start = period_key(c.start_ts, self.period_seconds)
            by_start[start] = Candle(
                symbol=symbol, start_ts=start, open=o, high=max(hi, o, cl), low=min(lo, o, cl), close=cl
            )
        if skipped:
            self.logger.warning("Skipped %d malformed history bars for %s", skipped, symbol)
        if not by_start:
            return 0

        ordered = [by_start[k] for k in sorted(by_start)]
        for c in ordered[:-1]:
            self._retire(c)
        self._current[symbol] = ordered[-1]
        self.logger.info("Seeded %d candles for %s", len(ordered), symbol)
        return len(ordered)

    def _retire(self, candle: Candle) -> None:
        hist = self._history.get(candle.symbol)
        if hist is None:
            hist = deque(maxlen=self.max_history)
            self._history[candle.symbol] = hist
        hist.append(candle)

    def _notify(self, update: CandleUpdate) -> None:
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                # 观察者故障不影响聚合状态与其它观察者
                self.logger.exception("Candle listener %r failed", listener)
