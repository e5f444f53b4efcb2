# cvd_monitor/storage/models.py
from dataclasses import dataclass, field
from typing import Any


@dataclass
class Symbol:
    code: str  # BTCUSDT
    name: str  # BTC
    enabled: bool = True


@dataclass
class Snapshot:
    symbol: str
    timestamp: int  # 桶起始时间 (ms)
    price: float
    cvd: float  # 累计值，不是单桶增量
    open_interest: float | None = None  # 持仓张数
    open_interest_value: float | None = None  # 持仓价值 (USDT)


@dataclass
class Alert:
    id: int | None
    symbol: str
    category: str
    price: float
    cvd: float
    cvd_change_percent: float
    price_change_percent: float
    oi_change_percent: float
    created_at: int  # ms
    details: dict[str, Any] = field(default_factory=dict)
    dispatched: bool | None = None  # None 表示待推送
