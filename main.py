"""fundedsim 统一命令行入口。

通过子命令驱动不同任务：

- `run`：模拟/实时行情 + K 线聚合 + 账户风控轮询看板。
- `test`：运行 pytest。
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from typing import Any

from engine.dashboard_engine import DashboardEngine


@dataclass
class CliArgs:
    """命令行参数结构。

    config: 配置文件路径
    task: 要运行的任务类型 (run/test)
    """
    config: str
    task: str
    duration: float | None = None  # 运行多少秒后退出；None 表示一直运行
    max_ticks: int | None = None   # 仅用于 debug，限制处理多少个 tick 就停止
    export_dir: str | None = None


def build_parser() -> argparse.ArgumentParser:
    """构建 CLI 参数解析器。"""
    parser = argparse.ArgumentParser(prog="fundedsim", description="fundedsim 行情与风控看板")

    def _add_config_arg(p: argparse.ArgumentParser, *, default: Any) -> None:
        p.add_argument(
            "--config",
            default=default,
            help="配置文件路径 (默认: config/config.yml)",
        )

    # 允许 `python main.py --config ... run`（全局）与 `python main.py run --config ...`（子命令）
    _add_config_arg(parser, default="config/config.yml")

    sub = parser.add_subparsers(dest="task")

    p_run = sub.add_parser("run", help="行情 + 风控看板主循环")
    _add_config_arg(p_run, default=argparse.SUPPRESS)
    p_run.add_argument("--duration", type=float, default=None, help="运行秒数后退出")
    p_run.add_argument("--max-ticks", type=int, default=None, help="处理多少个 tick 后退出")
    p_run.add_argument("--export-dir", type=str, default=None, help="退出时导出 K 线 CSV 的目录")

    p_test = sub.add_parser("test", help="运行 pytest")
    _add_config_arg(p_test, default=argparse.SUPPRESS)

    return parser


def parse_args(argv: list[str] | None = None) -> CliArgs:
    parser = build_parser()
    ns = parser.parse_args(argv)
    return CliArgs(
        config=str(getattr(ns, "config", "config/config.yml")),
        task=ns.task or "run",
        duration=getattr(ns, "duration", None),
        max_ticks=getattr(ns, "max_ticks", None),
        export_dir=getattr(ns, "export_dir", None),
    )


def main(argv: list[str] | None = None) -> Any:
    """程序主入口；返回子命令的结果（run 返回 summary dict）。"""
    args = parse_args(argv)

    if args.task == "run":
        engine = DashboardEngine(
            cfg_path=args.config,
            duration_s=args.duration,
            max_ticks=args.max_ticks,
            export_dir=args.export_dir,
        )
        return engine.run().summary

    if args.task == "test":
        import pytest

        return pytest.main(["-q"])

    raise ValueError(f"Unknown task: {args.task}")


if __name__ == "__main__":
    main()
