"""账户风险轮询循环。

状态机：Idle -> Polling -> Idle。
start 后立即执行一轮“拉取快照 -> 评估 -> 发布”，之后每隔 poll_interval_ms 执行一轮，直到 stop。
"""

from __future__ import annotations

import asyncio
import inspect
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Union

from risk.evaluator import RiskEvaluator
from shared.models.models import AccountSnapshot, RiskAssessment
from utils.logging import setup_logger

SnapshotFetcher = Callable[[], Union[Iterable[AccountSnapshot], Awaitable[Iterable[AccountSnapshot]]]]
UpdateCallback = Callable[[tuple[RiskAssessment, ...]], Any]

DEFAULT_POLL_INTERVAL_MS = 5000
# 拉取超时必须短于轮询间隔；配置不满足时按间隔的 80% 截断
MAX_TIMEOUT_RATIO = 0.8


@dataclass
class MonitorHandle:
    """start 返回的取消句柄（同时记录运行统计）。"""
    generation: int
    poll_interval_s: float
    fetch_timeout_s: float
    task: asyncio.Task | None = None
    stopped: bool = False
    cycles: int = 0
    failures: int = 0
    latest: tuple[RiskAssessment, ...] = ()

    @property
    def running(self) -> bool:
        return not self.stopped and self.task is not None and not self.task.done()


class RiskMonitorLoop:
    """定时拉取账户快照并发布风险评估。

    Parameters
    ----------
    evaluator:
        风险评估器，默认 RiskEvaluator()。
    fetch_timeout_ms:
        单次拉取超时（毫秒）。超时与拉取失败同样处理：记录日志、跳过本轮。
    logger:
        可选 logger。

    Notes
    -----
    发布给 on_update 的是不可变 tuple，消费者不会看到“更新到一半”的列表。
    拉取失败时保留上一轮成功发布的结果（last-known-good），循环不会自行停止。
    """

    def __init__(self, evaluator: RiskEvaluator | None = None, *, fetch_timeout_ms: int = 3000, logger=None):
        self.evaluator = evaluator or RiskEvaluator()
        self.fetch_timeout_ms = fetch_timeout_ms
        self.logger = logger or setup_logger("monitor")
        self.latest: tuple[RiskAssessment, ...] = ()
        self._generation = 0
        self._active: MonitorHandle | None = None

    @property
    def polling(self) -> bool:
        return self._active is not None and self._active.running

    def start(
        self,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        fetch_snapshots: SnapshotFetcher | None = None,
        on_update: UpdateCallback | None = None,
    ) -> MonitorHandle:
        """启动轮询（需在运行中的事件循环内调用）。

        Raises
        ------
        RuntimeError
            已在轮询中，或不在事件循环内。
        ValueError
            poll_interval_ms 非正数或缺少回调。
        """
        if poll_interval_ms <= 0:
            raise ValueError("poll_interval_ms must be positive")
        if fetch_snapshots is None or on_update is None:
            raise ValueError("fetch_snapshots and on_update are required")
        if self.polling:
            raise RuntimeError("Risk monitor is already polling; stop it first")

        interval_s = poll_interval_ms / 1000
        timeout_s = self.fetch_timeout_ms / 1000
        if timeout_s >= interval_s:
            timeout_s = interval_s * MAX_TIMEOUT_RATIO
            self.logger.warning(
                "fetch timeout %sms >= poll interval %sms, clamped to %.0fms",
                self.fetch_timeout_ms, poll_interval_ms, timeout_s * 1000,
            )

        self._generation += 1
        handle = MonitorHandle(generation=self._generation, poll_interval_s=interval_s, fetch_timeout_s=timeout_s)
        loop = asyncio.get_running_loop()
        handle.task = loop.create_task(self._run(handle, fetch_snapshots, on_update))
        self._active = handle
        self.logger.info("Risk monitor started (interval=%sms)", poll_interval_ms)
        return handle

    async def stop(self, handle: MonitorHandle | None = None) -> None:
        """停止轮询；幂等。返回后不会再有 on_update 调用。"""
        handle = handle or self._active
        if handle is None or handle.stopped:
            return
        handle.stopped = True
        if self._active is handle:
            self._active = None

        task = handle.task
        if task is None or task.done():
            return
        task.cancel()
        if task is asyncio.current_task():
            # 在 on_update 内部调用 stop：只标记取消，不能等待自己
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        self.logger.info("Risk monitor stopped after %d cycles (%d failures)", handle.cycles, handle.failures)

    async def _run(self, handle: MonitorHandle, fetch: SnapshotFetcher, on_update: UpdateCallback) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        while not handle.stopped:
            await self.run_cycle(handle, fetch, on_update)

            next_at += handle.poll_interval_s
            now = loop.time()
            if next_at < now:
                # 本轮耗时超过间隔：跳过错过的节拍，保持固定节奏
                missed = math.ceil((now - next_at) / handle.poll_interval_s)
                next_at += missed * handle.poll_interval_s
            await asyncio.sleep(next_at - now)

    async def _fetch(self, fetch: SnapshotFetcher) -> list[AccountSnapshot]:
        result = fetch()
        if inspect.isawaitable(result):
            result = await result
        return list(result)

    async def run_cycle(self, handle: MonitorHandle, fetch: SnapshotFetcher, on_update: UpdateCallback) -> bool:
        """执行一轮拉取-评估-发布；返回是否成功发布。"""
        try:
            snapshots = await asyncio.wait_for(self._fetch(fetch), timeout=handle.fetch_timeout_s)
        except asyncio.TimeoutError:
            handle.failures += 1
            self.logger.warning("Snapshot fetch timed out after %.1fs, keep last-known-good", handle.fetch_timeout_s)
            return False
        except Exception as exc:
            handle.failures += 1
            self.logger.warning("Snapshot fetch failed: %s, keep last-known-good", exc)
            return False

        try:
            assessments = tuple(self.evaluator.evaluate(s) for s in snapshots)
        except Exception:
            handle.failures += 1
            self.logger.exception("Risk evaluation failed, keep last-known-good")
            return False

        # 已停止或已被新一轮 start 取代：丢弃迟到的结果
        if handle.stopped or handle.generation != self._generation:
            self.logger.debug("Discard late cycle result (generation %d)", handle.generation)
            return False

        handle.latest = assessments
        self.latest = assessments
        handle.cycles += 1
        try:
            res = on_update(assessments)
            if inspect.isawaitable(res):
                await res
        except Exception:
            self.logger.exception("Risk update consumer failed")
        return True
