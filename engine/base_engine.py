"""异步引擎基类（模板模式）。

子类只实现 `run_async`（在事件循环里把行情泵与风控轮询跑起来）；
`run` 负责同步入口：创建事件循环、运行、收尾。
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class EngineResult:
    """引擎运行结果。

    summary: 运行统计（tick 数、K 线数、风控轮次等）
    artifacts: 导出文件路径，按品种索引
    """

    summary: dict[str, Any]
    artifacts: dict[str, Any] = field(default_factory=dict)


class BaseEngine(ABC):
    """引擎抽象基类。"""

    @abstractmethod
    async def run_async(self) -> EngineResult:
        raise NotImplementedError

    def run(self) -> EngineResult:
        """同步入口；不能在已运行的事件循环里调用（改用 `await run_async()`）。"""
        return asyncio.run(self.run_async())
