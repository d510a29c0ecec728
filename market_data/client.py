"""行情客户端（本地模拟行情 / WebSocket 实时推送）。"""

from __future__ import annotations

import asyncio
import json
import math
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Iterable

import requests
import websockets
from websockets.exceptions import WebSocketException

from market_data.models import Candle, Tick
from shared.utils.parsing import parse_number
from utils.logging import setup_logger


class MarketClient(ABC):
    """行情客户端抽象基类（TickSource）。

    重连/退避策略属于具体客户端自身的职责，聚合器不关心。
    """

    @abstractmethod
    def subscribe(self, symbols: Iterable[str]) -> AsyncIterator[Tick]:
        """订阅一组品种的 Tick 推送。

        Parameters
        ----------
        symbols:
            品种列表，例如 ["NIFTY", "BANKNIFTY"]。

        Returns
        -------
        AsyncIterator[Tick]
            按接收顺序产生的 Tick。
        """
        raise NotImplementedError

    @abstractmethod
    async def history(self, symbol: str, start_ts: int, end_ts: int, interval_s: int = 60) -> list[Candle]:
        """查询 [start_ts, end_ts) 区间、周期为 interval_s 的历史 K 线，按 start_ts 升序。"""
        raise NotImplementedError


@dataclass
class _Instrument:
    price: float
    volatility: float
    direction: float = 1.0
    duration: int = 0


DEFAULT_INSTRUMENTS: dict[str, tuple[float, float]] = {
    "NIFTY": (21500.0, 35.0),
    "BANKNIFTY": (46000.0, 80.0),
}


class SimulatedMarketClient(MarketClient):
    """本地模拟行情，便于离线开发/演示。

    价格走势：
    - 趋势延续：同一方向持续 5~15 个 tick；
    - 10% 概率出现剧烈反转（方向 x -5）；
    - 20% 概率波动率放大 3 倍；
    - 单步涨跌超过基础波动率时，下一段方向 x -0.5（均值回归）。
    """

    def __init__(
        self,
        instruments: dict[str, tuple[float, float]] | None = None,
        *,
        interval_ms: tuple[int, int] = (100, 800),
        seed: int | None = None,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.logger = logger or setup_logger("market-sim")
        self._rng = random.Random(seed)
        self._seed = seed
        self._clock = clock
        self.interval_ms = interval_ms
        self._instruments = {
            sym: _Instrument(price=p, volatility=v)
            for sym, (p, v) in (instruments or DEFAULT_INSTRUMENTS).items()
        }

    def _state(self, symbol: str) -> _Instrument:
        inst = self._instruments.get(symbol)
        if inst is None:
            # 未知品种：默认 1000 起步，低波动
            inst = _Instrument(price=1000.0, volatility=2.0)
            self._instruments[symbol] = inst
        return inst

    def next_price(self, symbol: str) -> float:
        """推进一步随机游走，返回新价格（保留两位小数）。"""
        inst = self._state(symbol)
        rng = self._rng

        if inst.duration <= 0:
            inst.duration = rng.randint(5, 14)
            inst.direction = 1.0 if rng.random() > 0.5 else -1.0
            if rng.random() > 0.9:
                inst.direction *= -5
        else:
            inst.duration -= 1

        vol = inst.volatility
        if rng.random() > 0.8:
            vol *= 3

        change = rng.random() * vol * 0.4 * inst.direction + (rng.random() - 0.5) * vol * 0.2
        if abs(change) > inst.volatility:
            inst.direction *= -0.5

        inst.price = round(max(inst.price + change, 0.05), 2)
        return inst.price

    async def subscribe(self, symbols: Iterable[str]) -> AsyncIterator[Tick]:
        wanted = list(symbols)
        self.logger.info("Simulated market started for %s", ", ".join(wanted))
        lo, hi = self.interval_ms
        while True:
            await asyncio.sleep(self._rng.randint(lo, hi) / 1000)
            ts = int(self._clock())
            for sym in wanted:
                yield Tick(symbol=sym, ts=ts, price=self.next_price(sym))

    async def history(self, symbol: str, start_ts: int, end_ts: int, interval_s: int = 60) -> list[Candle]:
        """按固定种子合成区间内的历史 K 线（同样参数结果可复现）。"""
        if end_ts <= start_ts:
            return []
        base_price, vol = DEFAULT_INSTRUMENTS.get(symbol, (1000.0, 2.0))
        rng = random.Random(f"{self._seed}:{symbol}:{start_ts}")
        out: list[Candle] = []
        price = base_price
        first = (start_ts // interval_s) * interval_s
        if first < start_ts:
            first += interval_s
        for start in range(first, end_ts, interval_s):
            open_ = price
            path = [open_]
            for _ in range(4):
                price = round(max(price + rng.gauss(0, vol * 0.3), 0.05), 2)
                path.append(price)
            out.append(
                Candle(symbol=symbol, start_ts=start, open=open_, high=max(path), low=min(path), close=price)
            )
        return out


def _parse_ts(val: Any) -> int:
    """解析 ISO 字符串 / 秒 / 毫秒时间戳为 unix 秒。"""
    if isinstance(val, bool):
        raise ValueError(f"Invalid timestamp: {val!r}")
    if isinstance(val, (int, float)) or (isinstance(val, str) and val.strip().replace(".", "", 1).isdigit()):
        try:
            num = float(val.strip() if isinstance(val, str) else val)
        except OverflowError:
            raise ValueError(f"Invalid timestamp: {val!r}") from None
    elif isinstance(val, str):
        dt = datetime.fromisoformat(val.strip().replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    else:
        raise ValueError(f"Invalid timestamp: {val!r}")
    # NaN / Infinity 等 JSON 扩展值同样视为非法
    if not math.isfinite(num):
        raise ValueError(f"Invalid timestamp: {val!r}")
    if num > 1e12:
        num /= 1000
    return int(num)


def parse_tick_message(msg: str | bytes) -> Tick | None:
    """解析推送消息 `{"symbol", "ltp", "timestamp"}`；格式不对（含非有限价格）返回 None。"""
    try:
        data = json.loads(msg)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    symbol = data.get("symbol")
    price = data.get("ltp", data.get("price"))
    raw_ts = data.get("timestamp", data.get("time"))
    if not symbol or price is None:
        return None
    try:
        ts = _parse_ts(raw_ts) if raw_ts is not None else int(time.time())
        return Tick(symbol=str(symbol), ts=ts, price=parse_number(price, ctx="ltp"))
    except (TypeError, ValueError):
        return None


class WebSocketMarketClient(MarketClient):
    """WebSocket 实时行情客户端（推送 Tick + REST 历史 K 线）。"""

    def __init__(
        self,
        ws_url: str,
        rest_url: str | None = None,
        *,
        reconnect_delay_s: float = 3.0,
        logger=None,
    ):
        self.ws_url = ws_url
        self.rest_url = rest_url
        self.reconnect_delay_s = reconnect_delay_s
        self.logger = logger or setup_logger("market-ws")

    async def subscribe(self, symbols: Iterable[str]) -> AsyncIterator[Tick]:
        wanted = set(symbols)
        while True:
            try:
                async with websockets.connect(self.ws_url) as ws:
                    self.logger.info("Connected to market WS: %s", self.ws_url)
                    await ws.send(json.dumps({"type": "subscribe", "symbols": sorted(wanted)}))
                    async for msg in ws:
                        tick = parse_tick_message(msg)
                        if tick is None:
                            self.logger.debug("Skip malformed message: %r", msg)
                            continue
                        if tick.symbol in wanted:
                            yield tick
            except (OSError, WebSocketException) as exc:
                self.logger.warning(
                    "WS error %s, reconnecting in %.1fs...", exc, self.reconnect_delay_s
                )
                await asyncio.sleep(self.reconnect_delay_s)

    def _fetch_history(self, symbol: str, start_ts: int, end_ts: int, interval_s: int) -> list[dict]:
        resp = requests.get(
            f"{self.rest_url.rstrip('/')}/history",
            params={"symbol": symbol, "from": start_ts, "to": end_ts, "interval": interval_s},
            timeout=5,
        )
        resp.raise_for_status()
        data = resp.json()
        return data if isinstance(data, list) else []

    async def history(self, symbol: str, start_ts: int, end_ts: int, interval_s: int = 60) -> list[Candle]:
        if not self.rest_url:
            return []
        loop = asyncio.get_running_loop()
        try:
            rows = await loop.run_in_executor(None, self._fetch_history, symbol, start_ts, end_ts, interval_s)
        except (requests.RequestException, ValueError) as exc:
            self.logger.warning("History fetch failed for %s: %s", symbol, exc)
            return []

        out: list[Candle] = []
        for row in rows:
            try:
                out.append(
                    Candle(
                        symbol=symbol,
                        start_ts=_parse_ts(row["time"]),
                        open=parse_number(row["open"], ctx="open"),
                        high=parse_number(row["high"], ctx="high"),
                        low=parse_number(row["low"], ctx="low"),
                        close=parse_number(row["close"], ctx="close"),
                    )
                )
            except (KeyError, TypeError, ValueError):
                continue
        out.sort(key=lambda c: c.start_ts)
        return out


def get_market_client(market_cfg, logger=None) -> MarketClient:
    """根据配置选择行情客户端。

    Parameters
    ----------
    market_cfg:
        `shared.config.schema.MarketConfig`。

    Returns
    -------
    MarketClient
        对应 source 的行情客户端。
    """
    source = market_cfg.source.lower()
    if source == "websocket":
        return WebSocketMarketClient(
            market_cfg.ws_url,
            market_cfg.rest_url,
            reconnect_delay_s=market_cfg.reconnect_delay_s,
            logger=logger,
        )
    if source == "simulated":
        return SimulatedMarketClient(
            interval_ms=(market_cfg.tick_interval_min_ms, market_cfg.tick_interval_max_ms),
            seed=market_cfg.seed,
            logger=logger,
        )
    raise ValueError(f"Unsupported market source: {market_cfg.source}")
