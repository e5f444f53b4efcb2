from dataclasses import dataclass
from enum import Enum

from cvd_monitor.client.models import OpenInterest
from cvd_monitor.config import WhaleConfig


class WhaleSignalType(Enum):
    WHALE_BUY = "WHALE_BUY"
    WHALE_SELL = "WHALE_SELL"
    WASH_TRADING = "WASH_TRADING"


@dataclass
class WhaleSignal:
    symbol: str
    type: WhaleSignalType
    confidence: float  # 0-100
    oi_change: float
    price_change: float
    oi_volume_ratio: float
    description: str


def _pct(current: float, previous: float) -> float:
    if previous == 0:
        return 0.0
    return (current - previous) / previous * 100


def calculate_confidence(
    signal_type: WhaleSignalType,
    oi_change: float,
    price_change: float,
    oi_volume_ratio: float,
) -> float:
    """
    计算信号置信度

    基础分加上各项封顶奖励分，最终限制在 0~100
    """
    if signal_type is WhaleSignalType.WHALE_BUY:
        confidence = 50.0
        confidence += min(abs(oi_change) - 20, 30)  # OI 增幅，最多 +30
        confidence += max(10 - abs(price_change) * 5, 0)  # 价格越稳越高，最多 +10
        confidence += min((oi_volume_ratio - 0.25) * 20, 10)
    elif signal_type is WhaleSignalType.WHALE_SELL:
        confidence = 50.0
        confidence += min(abs(oi_change) - 15, 25)
        divergence = abs(oi_change) - abs(price_change)
        confidence += min(divergence, 15)
    else:
        confidence = 70.0
        confidence += min(abs(oi_change) / 2, 15)
    return min(max(confidence, 0.0), 100.0)


def detect_whale_signal(
    symbol: str,
    oi_history: list[OpenInterest],
    price_change: float,
    volume_24h: float,
    cfg: WhaleConfig,
) -> WhaleSignal | None:
    """检测庄家行为

    Args:
        oi_history: 持仓量历史，最新在前，至少两条且带持仓价值
        price_change: 最近一个周期的价格变化 (%)
        volume_24h: 24 小时成交额 (USDT)

    Returns:
        命中的信号，没有则为 None
    """
    points = [p for p in oi_history if p.open_interest_value is not None]
    if len(points) < 2:
        return None

    latest = points[0].open_interest_value
    prev = points[1].open_interest_value
    assert latest is not None and prev is not None
    if prev <= 0:
        return None

    oi_change = _pct(latest, prev)
    oi_delta = abs(latest - prev)
    ratio = oi_delta / volume_24h if volume_24h > 0 else 0.0

    if latest < cfg.min_oi_value_usd:
        return None

    # 洗盘先判断，否则会被撤仓规则截获
    if len(points) >= 3:
        oldest = points[2].open_interest_value
        assert oldest is not None
        if oldest > 0:
            first_leg = _pct(prev, oldest)
            second_leg = oi_change
            net = _pct(latest, oldest)
            if (
                first_leg >= cfg.wash_rise_pct
                and second_leg <= cfg.wash_fall_pct
                and abs(net) <= cfg.wash_net_abs_pct
                and abs(price_change) <= cfg.wash_price_abs_pct
            ):
                return WhaleSignal(
                    symbol=symbol,
                    type=WhaleSignalType.WASH_TRADING,
                    confidence=calculate_confidence(
                        WhaleSignalType.WASH_TRADING, first_leg, price_change, ratio
                    ),
                    oi_change=oi_change,
                    price_change=price_change,
                    oi_volume_ratio=ratio,
                    description=(
                        f"🌊 洗盘对倒：OI先增{first_leg:.1f}%后降{abs(second_leg):.1f}%，"
                        f"庄家正在清洗盘面"
                    ),
                )

    if (
        oi_change >= cfg.accumulation_oi_pct
        and abs(price_change) <= cfg.accumulation_price_abs_pct
        and ratio >= cfg.accumulation_oi_volume_ratio
    ):
        return WhaleSignal(
            symbol=symbol,
            type=WhaleSignalType.WHALE_BUY,
            confidence=calculate_confidence(WhaleSignalType.WHALE_BUY, oi_change, price_change, ratio),
            oi_change=oi_change,
            price_change=price_change,
            oi_volume_ratio=ratio,
            description=(
                f"🐋 庄家建仓：OI激增{oi_change:.1f}%，价格仅动{abs(price_change):.1f}%，"
                f"资金正在悄悄流入"
            ),
        )

    # 价格跌幅小于 OI 降幅的一半
    if oi_change <= cfg.distribution_oi_pct and price_change > oi_change / 2:
        return WhaleSignal(
            symbol=symbol,
            type=WhaleSignalType.WHALE_SELL,
            confidence=calculate_confidence(WhaleSignalType.WHALE_SELL, oi_change, price_change, ratio),
            oi_change=oi_change,
            price_change=price_change,
            oi_volume_ratio=ratio,
            description=(
                f"🐋 庄家撤仓：OI骤降{abs(oi_change):.1f}%，价格仅跌{abs(price_change):.1f}%，"
                f"主力正在离场"
            ),
        )

    return None
