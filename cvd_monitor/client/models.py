"""Binance API 数据模型"""

from dataclasses import dataclass


@dataclass
class Kline:
    """K 线数据 (标记价格)"""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    close_time: int


@dataclass
class OpenInterest:
    """持仓量数据"""

    symbol: str
    open_interest: float
    open_interest_value: float
    timestamp: int


@dataclass
class AggTrade:
    """归集成交"""

    agg_id: int
    price: float
    quantity: float
    timestamp: int
    is_buyer_maker: bool

    @property
    def signed_quantity(self) -> float:
        # is_buyer_maker=True 表示卖方是 taker
        return -self.quantity if self.is_buyer_maker else self.quantity


@dataclass
class Ticker24h:
    """24 小时行情"""

    symbol: str
    last_price: float
    price_change_percent: float
    quote_volume: float
