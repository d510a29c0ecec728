"""行情数据模块（market_data）。

该包聚合：
- 行情客户端（模拟行情 / WebSocket 推送 + REST 历史 K 线）
- Tick -> K 线聚合器
- 数据模型的稳定导出入口（见 `market_data/models.py`）
"""

from market_data.aggregator import CandleAggregator, CandleMutated, CandleUpdate, NewCandle
from market_data.client import MarketClient, SimulatedMarketClient, WebSocketMarketClient, get_market_client

__all__ = [
    "MarketClient",
    "SimulatedMarketClient",
    "WebSocketMarketClient",
    "get_market_client",
    "CandleAggregator",
    "CandleUpdate",
    "NewCandle",
    "CandleMutated",
]
