"""数值解析工具（用于外部账户/持仓数据的容错读取）。"""

from __future__ import annotations

import math
from typing import Any

from shared.errors import MalformedInputError


def parse_number(value: Any, *, ctx: str = "value") -> float:
    """把外部字段解析为有限 float。

    Parameters
    ----------
    value:
        原始值（float/int/str 等）。
    ctx:
        字段名，仅用于异常信息。

    Raises
    ------
    MalformedInputError
        缺失、无法解析、NaN、无穷大或超出 float 范围（如 10**400）。
    """
    if value is None or isinstance(value, bool):
        raise MalformedInputError(f"{ctx} is missing")
    try:
        out = float(value.strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise MalformedInputError(f"{ctx} is not a number: {value!r}") from exc
    if not math.isfinite(out):
        raise MalformedInputError(f"{ctx} is not finite: {value!r}")
    return out


def parse_lots(value: Any, default: int = 1) -> int:
    """解析手数；缺失/无法解析/非正数时回退为 default。

    小数手数向零截断（"2.7" -> 2）。
    """
    try:
        lots = int(parse_number(value, ctx="lots"))
    except MalformedInputError:
        return default
    return lots if lots > 0 else default


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False
