"""账户快照提供方（HTTP 拉取管理端风控接口）。"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Mapping

import requests

from shared.errors import MalformedInputError, SnapshotFetchError
from shared.models.models import AccountSnapshot
from shared.utils.parsing import parse_bool, parse_number
from utils.logging import setup_logger


def _num_or_none(row: Mapping[str, Any], key: str) -> float | None:
    try:
        return parse_number(row.get(key), ctx=key)
    except MalformedInputError:
        return None


def snapshot_from_row(row: Mapping[str, Any]) -> AccountSnapshot:
    """把管理端返回的一行账户数据转换为 AccountSnapshot。

    行格式：`{id, size, equity, balance, daily_start_balance, currentDD, dailyDD, isDanger}`。
    回撤百分比缺失时按 size/equity/daily_start_balance 现算；数值字段原样保留，
    无法解析的值交给 RiskEvaluator 按安全默认处理。
    """
    size = _num_or_none(row, "size")
    equity = _num_or_none(row, "equity")

    cumulative = _num_or_none(row, "currentDD")
    if cumulative is None and size and equity is not None:
        cumulative = (size - equity) / size * 100

    daily = _num_or_none(row, "dailyDD")
    if daily is None and equity is not None:
        daily_start = _num_or_none(row, "daily_start_balance") or _num_or_none(row, "balance")
        if daily_start:
            daily = (daily_start - equity) / daily_start * 100

    return AccountSnapshot(
        account_id=str(row.get("id", "")),
        starting_size=row.get("size"),
        equity=row.get("equity"),
        daily_drawdown_pct=daily if daily is not None else 0.0,
        cumulative_drawdown_pct=cumulative if cumulative is not None else 0.0,
        flagged_danger=parse_bool(row.get("isDanger", False)),
    )


class HttpSnapshotProvider:
    """通过 HTTP GET 拉取账户列表。

    Parameters
    ----------
    url:
        风控接口地址（返回 JSON 数组）。
    api_token:
        可选 Bearer token。
    timeout_s:
        requests 超时；RiskMonitorLoop 另有外层超时。

    Notes
    -----
    请求都在一个专用单线程池里执行：外层超时后请求仍可能在跑，
    单线程保证同一时刻只有一个请求使用 Session，`close` 也会先等它结束。
    """

    def __init__(self, url: str, api_token: str | None = None, timeout_s: float = 3.0, logger=None):
        self.url = url
        self.api_token = api_token
        self.timeout_s = timeout_s
        self.logger = logger or setup_logger("provider")
        self._session: requests.Session | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="snapshot-fetch")

    @property
    def session(self) -> requests.Session:
        # 首次使用时再建立连接池
        if self._session is None:
            self._session = requests.Session()
            if self.api_token:
                self._session.headers["Authorization"] = f"Bearer {self.api_token}"
        return self._session

    def fetch_sync(self) -> list[AccountSnapshot]:
        try:
            resp = self.session.get(self.url, timeout=self.timeout_s)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            raise SnapshotFetchError(f"GET {self.url} failed: {exc}") from exc
        except ValueError as exc:
            raise SnapshotFetchError(f"GET {self.url} returned invalid JSON") from exc

        if not isinstance(data, list):
            raise SnapshotFetchError(f"GET {self.url} returned {type(data).__name__}, expected list")
        return [snapshot_from_row(row) for row in data if isinstance(row, Mapping)]

    async def fetch(self) -> list[AccountSnapshot]:
        """在专用线程中执行阻塞请求，避免卡住事件循环。"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.fetch_sync)

    def close(self) -> None:
        """等待在途请求结束后关闭 Session（阻塞，最长约一个 timeout_s）。"""
        self._executor.shutdown(wait=True)
        if self._session is not None:
            self._session.close()
            self._session = None
