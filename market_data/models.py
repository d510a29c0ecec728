"""对外导出数据模型（稳定入口）。

模型定义位于 `shared/models/models.py`；这里提供一个稳定导出路径，
让上层代码统一使用 `market_data.models` 来导入 Tick/Candle 等结构。
"""

from shared.models.models import Candle, Tick

__all__ = ["Tick", "Candle"]
