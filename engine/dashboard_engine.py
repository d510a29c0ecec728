"""行情 + 风控看板引擎（DashboardEngine）。

流程：配置 → 行情源 → K 线聚合 → 账户簿估值价 → 风控轮询 → 控制台展示 → 总结。
两路输入互相独立：Tick 推送驱动聚合器，定时器驱动风控轮询，都跑在同一个事件循环里。
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from rich.console import Console
from rich.table import Table

from engine.base_engine import BaseEngine, EngineResult
from market_data.aggregator import CandleAggregator
from market_data.client import MarketClient, get_market_client
from risk.accounts import AccountBook
from risk.monitor import RiskMonitorLoop, SnapshotFetcher
from risk.provider import HttpSnapshotProvider
from risk.rules import AccountRuleChecker
from shared.config.config_loader import load_config
from shared.errors import MalformedInputError, StaleTickError
from shared.models.models import RiskAssessment
from utils.logging import setup_logger


def _fmt_ts(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%H:%M:%S")


def render_dashboard(aggregator: CandleAggregator, assessments: tuple[RiskAssessment, ...]) -> list[Table]:
    """构建两张表：各品种最新 K 线 + 各账户风险占用。"""
    candles = Table(title="Market")
    for col in ("Symbol", "Bar", "Open", "High", "Low", "Close"):
        candles.add_column(col, justify="right" if col not in {"Symbol", "Bar"} else "left")
    for sym in aggregator.symbols():
        c = aggregator.current(sym)
        if c is None:
            continue
        candles.add_row(sym, _fmt_ts(c.start_ts), f"{c.open:.2f}", f"{c.high:.2f}", f"{c.low:.2f}", f"{c.close:.2f}")

    risk = Table(title="Risk Monitor")
    for col in ("Account", "Loss", "Floor", "Usage", "Daily DD", "Total DD", "Status"):
        risk.add_column(col, justify="left" if col in {"Account", "Status"} else "right")
    for a in assessments:
        status = "[red]DANGER[/red]" if a.is_danger else "[green]OK[/green]"
        risk.add_row(
            a.account_id,
            f"{a.loss_amount:,.2f}",
            f"{a.max_loss_limit:,.2f}",
            f"{a.usage_pct:.1f}%",
            f"{a.daily_drawdown_pct:.2f}%",
            f"{a.cumulative_drawdown_pct:.2f}%",
            status,
        )
    return [candles, risk]


class DashboardEngine(BaseEngine):
    """看板主循环。

    Parameters
    ----------
    cfg_path:
        配置文件路径。
    cfg_obj:
        已加载的配置对象（优先于 cfg_path）。
    duration_s:
        运行时长（秒）；None 表示一直运行到被中断。
    max_ticks:
        处理多少个 Tick 后退出（用于 dry-run/测试）。
    export_dir:
        退出时把各品种 K 线历史导出为 CSV 的目录。
    market_client:
        可注入的行情客户端（测试用），默认按配置构建。
    keep_updates:
        `updates` 中保留的最近风控发布次数。
    clock:
        当前 unix 时间（秒），用于预热区间与日切判断；测试可注入。
    """

    def __init__(
        self,
        *,
        cfg_path: str = "config/config.yml",
        cfg_obj=None,
        duration_s: float | None = None,
        max_ticks: int | None = None,
        export_dir: str | None = None,
        market_client: MarketClient | None = None,
        console: Console | None = None,
        keep_updates: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self._cfg_path = cfg_path
        self._cfg_obj = cfg_obj
        self._duration_s = duration_s
        self._max_ticks = max_ticks
        self._export_dir = export_dir
        self._market_client = market_client
        self.console = console or Console()
        self._clock = clock

        self.cfg = None
        self.aggregator: CandleAggregator | None = None
        self.book: AccountBook | None = None
        self.ticks = 0
        self.stale_ticks = 0
        self.malformed_ticks = 0
        self.updates: deque[tuple[RiskAssessment, ...]] = deque(maxlen=keep_updates)

    def _load_cfg(self):
        return self._cfg_obj or load_config(self._cfg_path)

    async def run_async(self) -> EngineResult:
        cfg = self._load_cfg()
        self.cfg = cfg
        setup_logger(level=cfg.log_level)
        logger = setup_logger("engine")

        aggregator = CandleAggregator(cfg.market.period_seconds, cfg.market.max_history)
        self.aggregator = aggregator
        market_client = self._market_client or get_market_client(cfg.market, logger=logger)

        book = AccountBook.from_config(cfg.accounts)
        self.book = book
        aggregator.add_listener(book.on_candle)

        await self._warmup(cfg, market_client, aggregator, logger=logger)

        fetch, provider = self._build_fetcher(cfg, book)
        monitor = RiskMonitorLoop(fetch_timeout_ms=cfg.risk.fetch_timeout_ms, logger=logger)
        handle = monitor.start(cfg.risk.poll_interval_ms, fetch, self._on_risk_update)

        pump = asyncio.create_task(self._pump(market_client, aggregator, cfg.market.symbols))
        try:
            await asyncio.wait_for(asyncio.shield(pump), timeout=self._duration_s)
        except asyncio.TimeoutError:
            logger.info("Run duration %.1fs reached", self._duration_s)
        finally:
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
            await monitor.stop(handle)
            if provider is not None:
                # close 会等待线程池里仍在进行的请求结束，不能阻塞事件循环
                await asyncio.get_running_loop().run_in_executor(None, provider.close)

        artifacts = self._export_history(aggregator, cfg.market.symbols, logger=logger)
        summary = {
            "ticks": self.ticks,
            "stale_ticks": self.stale_ticks,
            "malformed_ticks": self.malformed_ticks,
            "candles": {sym: len(aggregator.get_history(sym)) for sym in cfg.market.symbols},
            "risk_cycles": handle.cycles,
            "risk_fetch_failures": handle.failures,
            "danger_accounts": [a.account_id for a in monitor.latest if a.is_danger],
        }
        logger.info("Summary: %s", summary)
        return EngineResult(summary=summary, artifacts=artifacts)

    async def _warmup(self, cfg, market_client: MarketClient, aggregator: CandleAggregator, *, logger) -> None:
        n = cfg.market.warmup_bars
        if n <= 0:
            return
        period = cfg.market.period_seconds
        end_ts = (int(self._clock()) // period) * period
        for sym in cfg.market.symbols:
            candles = await market_client.history(sym, end_ts - n * period, end_ts, period)
            aggregator.seed_history(sym, candles)
            seeded = aggregator.current(sym)
            if seeded is not None:
                self.book.update_price(sym, seeded.close)
        logger.info("Warm-up done (%d bars per symbol)", n)

    def _build_fetcher(self, cfg, book: AccountBook) -> tuple[SnapshotFetcher, HttpSnapshotProvider | None]:
        if cfg.risk.provider == "http":
            provider = HttpSnapshotProvider(
                cfg.risk.provider_url,
                api_token=cfg.risk.api_token,
                timeout_s=cfg.risk.fetch_timeout_ms / 1000,
            )
            return provider.fetch, provider

        checker = AccountRuleChecker(cfg.risk.rules)
        offset = cfg.risk.daily_reset_utc_offset_minutes

        def fetch_from_book():
            book.roll_day(self._clock(), offset)
            book.apply_rules(checker)
            return book.snapshots()

        return fetch_from_book, None

    async def _pump(self, market_client: MarketClient, aggregator: CandleAggregator, symbols: list[str]) -> None:
        async for tick in market_client.subscribe(symbols):
            try:
                aggregator.ingest(tick)
            except StaleTickError:
                self.stale_ticks += 1
                continue
            except MalformedInputError:
                self.malformed_ticks += 1
                continue
            self.ticks += 1
            if self._max_ticks is not None and self.ticks >= self._max_ticks:
                break

    def _on_risk_update(self, assessments: tuple[RiskAssessment, ...]) -> None:
        self.updates.append(assessments)
        for table in render_dashboard(self.aggregator, assessments):
            self.console.print(table)

    def _export_history(self, aggregator: CandleAggregator, symbols: list[str], *, logger) -> dict[str, Any]:
        if not self._export_dir:
            return {}
        out_dir = Path(self._export_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        paths: dict[str, Any] = {}
        for sym in symbols:
            path = out_dir / f"{sym}_{aggregator.period_seconds}s.csv"
            aggregator.history_frame(sym).to_csv(path, index=False)
            paths[sym] = str(path)
        logger.info("Exported candle history to %s", out_dir)
        return paths
