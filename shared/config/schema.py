"""配置架构定义（Pydantic Schema）。

目标：
- 让配置成为“强类型”的边界协议；
- 启动阶段尽早失败，避免 typo/类型错误在长时间运行的监控循环里“隐蔽爆炸”。
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MarketConfig(BaseModel):
    """行情与 K 线聚合配置。"""
    source: Literal["simulated", "websocket"] = "simulated"
    symbols: List[str] = Field(default_factory=lambda: ["NIFTY", "BANKNIFTY"])
    period_seconds: int = Field(default=1, ge=1)
    # None 表示历史 K 线不设上限
    max_history: Optional[int] = Field(default=None, ge=1)
    # 启动时从 TickSource.history 预热的 K 线根数（0 表示不预热）
    warmup_bars: int = Field(default=0, ge=0)

    ws_url: Optional[str] = None
    rest_url: Optional[str] = None
    reconnect_delay_s: float = Field(default=3.0, gt=0)

    # 模拟行情：推送间隔随机落在 [min, max] 毫秒
    tick_interval_min_ms: int = Field(default=100, ge=1)
    tick_interval_max_ms: int = Field(default=800, ge=1)
    seed: Optional[int] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_source(self) -> "MarketConfig":
        if self.source == "websocket" and not self.ws_url:
            raise ValueError("market.ws_url is required when market.source == 'websocket'")
        if self.tick_interval_max_ms < self.tick_interval_min_ms:
            raise ValueError("market.tick_interval_max_ms must be >= market.tick_interval_min_ms")
        return self


class RulesConfig(BaseModel):
    """账户规则阈值（比例，0.03 表示 3%）。"""
    max_drawdown_pct: float = Field(default=0.03, gt=0)
    daily_drawdown_pct: float = Field(default=0.02, gt=0)
    profit_spike_pct: float = Field(default=0.50, gt=0)
    profit_target_pct: float = Field(default=0.08, gt=0)
    min_trades: int = Field(default=2, ge=0)
    model_config = ConfigDict(extra="forbid")


class RiskConfig(BaseModel):
    """风控轮询配置。"""
    poll_interval_ms: int = Field(default=5000, gt=0)
    fetch_timeout_ms: int = Field(default=3000, gt=0)
    provider: Literal["simulated", "http"] = "simulated"
    provider_url: Optional[str] = None
    api_token: Optional[str] = None
    # 日切时刻 = 该时区的 00:00；默认 IST (+05:30)
    daily_reset_utc_offset_minutes: int = Field(default=330, ge=-720, le=840)
    rules: RulesConfig = Field(default_factory=RulesConfig)
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_provider(self) -> "RiskConfig":
        if self.provider == "http" and not self.provider_url:
            raise ValueError("risk.provider_url is required when risk.provider == 'http'")
        return self


class PositionConfig(BaseModel):
    """演示账户的初始持仓。"""
    symbol: str
    side: Literal["buy", "sell"]
    entry_price: float
    lots: int = Field(default=1, ge=1)
    model_config = ConfigDict(extra="forbid")


class AccountConfig(BaseModel):
    """演示账户（仅 simulated provider 使用）。"""
    id: str
    size: float = Field(gt=0)
    balance: Optional[float] = None
    status: Literal["active", "funded", "failed"] = "active"
    positions: List[PositionConfig] = Field(default_factory=list)
    model_config = ConfigDict(extra="forbid")


class MainConfig(BaseModel):
    """应用总配置。"""
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    market: MarketConfig = Field(default_factory=MarketConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    accounts: List[AccountConfig] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

