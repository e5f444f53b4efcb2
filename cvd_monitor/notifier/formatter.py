from datetime import UTC, datetime

from cvd_monitor.alert.whale import WhaleSignal, WhaleSignalType
from cvd_monitor.storage.models import Alert

ALERT_EMOJI = {
    "STRONG_BREAKOUT": "🚀",
    "ACCUMULATION": "📊",
    "DISTRIBUTION_WARN": "⚠️",
    "SHORT_CONFIRM": "📉",
    "TOP_DIVERGENCE": "🔴",
}

ALERT_TEXT = {
    "STRONG_BREAKOUT": "强势突破",
    "ACCUMULATION": "吸筹信号",
    "DISTRIBUTION_WARN": "派发警告",
    "SHORT_CONFIRM": "做空确认",
    "TOP_DIVERGENCE": "顶部背离",
}

WHALE_TEXT = {
    WhaleSignalType.WHALE_BUY: "庄家建仓",
    WhaleSignalType.WHALE_SELL: "庄家撤仓",
    WhaleSignalType.WASH_TRADING: "洗盘对倒",
}


def _format_time(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC).strftime("%Y-%m-%d %H:%M UTC")


def format_alert(alert: Alert) -> str:
    emoji = ALERT_EMOJI.get(alert.category, "🔔")
    name = ALERT_TEXT.get(alert.category, alert.category)

    return f"""{emoji} <b>{name}</b>

💎 币对: {alert.symbol}
💰 价格: ${alert.price:.6f}
📊 CVD: {alert.cvd:.0f}
📈 CVD变化: {alert.cvd_change_percent:.2f}%
📉 价格变化: {alert.price_change_percent:.2f}%
🔄 OI变化: {alert.oi_change_percent:.2f}%

⏰ {_format_time(alert.created_at)}"""


def format_whale_signal(signal: WhaleSignal) -> str:
    name = WHALE_TEXT.get(signal.type, signal.type.value)

    return f"""🐋 <b>{name}</b> | {signal.symbol}

{signal.description}

OI变化: {signal.oi_change:+.1f}%
价格变化: {signal.price_change:+.2f}%
ΔOI/成交额: {signal.oi_volume_ratio:.3f}
置信度: {signal.confidence:.0f}/100"""
