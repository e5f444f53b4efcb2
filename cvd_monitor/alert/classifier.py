import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from cvd_monitor.aggregator.change import safe_percent_change
from cvd_monitor.aggregator.oi import calculate_oi_change
from cvd_monitor.config import AlertRulesConfig, AlertsConfig
from cvd_monitor.storage.database import Database
from cvd_monitor.storage.models import Alert, Snapshot

logger = logging.getLogger(__name__)


class AlertCategory(Enum):
    STRONG_BREAKOUT = "STRONG_BREAKOUT"
    ACCUMULATION = "ACCUMULATION"
    DISTRIBUTION_WARN = "DISTRIBUTION_WARN"
    SHORT_CONFIRM = "SHORT_CONFIRM"
    TOP_DIVERGENCE = "TOP_DIVERGENCE"
    NONE = "NONE"


@dataclass
class AlertInputs:
    latest: Snapshot
    reference: Snapshot
    cvd_change: float
    price_change: float
    oi_change: float
    window: list[Snapshot] = field(default_factory=list)  # 最新在前


@dataclass
class Classification:
    category: AlertCategory
    cvd_change: float = 0.0
    price_change: float = 0.0
    oi_change: float = 0.0
    latest: Snapshot | None = None
    reference: Snapshot | None = None


Rule = Callable[[AlertInputs, AlertRulesConfig], bool]


def strong_breakout(i: AlertInputs, r: AlertRulesConfig) -> bool:
    # 量价仓齐升
    return (
        i.cvd_change >= r.strong_breakout_cvd_pct
        and i.price_change >= r.strong_breakout_price_pct
        and i.oi_change >= r.strong_breakout_oi_pct
    )


def accumulation(i: AlertInputs, r: AlertRulesConfig) -> bool:
    # 主动买入放大但价格横盘
    return (
        i.cvd_change >= r.accumulation_cvd_pct
        and abs(i.price_change) <= r.accumulation_price_abs_pct
        and i.oi_change >= r.accumulation_oi_min_pct
    )


def distribution_warn(i: AlertInputs, r: AlertRulesConfig) -> bool:
    # 价格上涨但主动卖出增加
    return (
        i.cvd_change <= r.distribution_cvd_pct
        and i.price_change >= r.distribution_price_pct
        and i.oi_change <= r.distribution_oi_max_pct
    )


def short_confirm(i: AlertInputs, r: AlertRulesConfig) -> bool:
    return (
        i.cvd_change <= r.short_confirm_cvd_pct
        and i.price_change <= r.short_confirm_price_pct
        and i.oi_change >= r.short_confirm_oi_pct
    )


def top_divergence(i: AlertInputs, r: AlertRulesConfig) -> bool:
    """价格贴近窗口高点，CVD 却明显低于窗口高点"""
    if len(i.window) < r.top_divergence_window:
        return False
    window = i.window[: r.top_divergence_window]
    max_price = max(s.price for s in window)
    max_cvd = max(s.cvd for s in window)
    return (
        i.latest.price >= max_price * r.top_divergence_price_ratio
        and i.latest.cvd < max_cvd * r.top_divergence_cvd_ratio
    )


# 按顺序匹配，命中第一条即返回
RULES: list[tuple[Rule, AlertCategory]] = [
    (strong_breakout, AlertCategory.STRONG_BREAKOUT),
    (accumulation, AlertCategory.ACCUMULATION),
    (distribution_warn, AlertCategory.DISTRIBUTION_WARN),
    (short_confirm, AlertCategory.SHORT_CONFIRM),
    (top_divergence, AlertCategory.TOP_DIVERGENCE),
]


def select_reference(snapshots: list[Snapshot], interval_ms: int) -> Snapshot | None:
    """选取对比基准

    Args:
        snapshots: 最近快照，最新在前
        interval_ms: 快照间隔

    Returns:
        除最新一条外、时间不晚于 latest - interval 的最近快照；
        找不到时取最早的一条；不足两条时为 None
    """
    if len(snapshots) < 2:
        return None
    cutoff = snapshots[0].timestamp - interval_ms
    for s in snapshots[1:]:
        if s.timestamp <= cutoff:
            return s
    return snapshots[-1]


def classify(
    snapshots: list[Snapshot],
    interval_ms: int,
    rules: AlertRulesConfig,
    symbol: str = "",
) -> Classification:
    ordered = sorted(snapshots, key=lambda s: s.timestamp, reverse=True)
    reference = select_reference(ordered, interval_ms)
    if reference is None:
        return Classification(category=AlertCategory.NONE)

    latest = ordered[0]
    inputs = AlertInputs(
        latest=latest,
        reference=reference,
        cvd_change=safe_percent_change(latest.cvd, reference.cvd),
        price_change=safe_percent_change(latest.price, reference.price),
        oi_change=calculate_oi_change(latest, reference),
        window=ordered,
    )

    if abs(inputs.cvd_change) > rules.anomaly_cvd_pct or abs(inputs.price_change) > rules.anomaly_price_pct:
        logger.warning(
            f"{symbol}: extreme change detected (price={inputs.price_change:.2f}%, "
            f"cvd={inputs.cvd_change:.2f}%), skip alert"
        )
        return Classification(category=AlertCategory.NONE, latest=latest, reference=reference)

    category = AlertCategory.NONE
    for predicate, candidate in RULES:
        if predicate(inputs, rules):
            category = candidate
            break

    return Classification(
        category=category,
        cvd_change=inputs.cvd_change,
        price_change=inputs.price_change,
        oi_change=inputs.oi_change,
        latest=latest,
        reference=reference,
    )


class AlertClassifier:
    def __init__(self, db: Database, config: AlertsConfig, interval_ms: int):
        self.db = db
        self.config = config
        self.interval_ms = interval_ms

    async def evaluate(
        self, symbol: str, latest_delta: float = 0.0, now_ms: int | None = None
    ) -> Alert | None:
        """对最新快照分类，命中且不在冷却期内时写入告警"""
        if not self.config.enabled:
            return None
        if now_ms is None:
            now_ms = int(time.time() * 1000)

        snapshots = await self.db.get_recent_snapshots(symbol, self.config.history_limit)
        result = classify(snapshots, self.interval_ms, self.config.rules, symbol=symbol)
        if result.category is AlertCategory.NONE:
            return None
        assert result.latest is not None and result.reference is not None

        since = now_ms - self.config.cooldown_minutes * 60 * 1000
        if await self.db.has_recent_alert(symbol, result.category.value, since):
            logger.info(f"{symbol}: {result.category.value} in cooldown, skipped")
            return None

        alert = Alert(
            id=None,
            symbol=symbol,
            category=result.category.value,
            price=result.latest.price,
            cvd=result.latest.cvd,
            cvd_change_percent=result.cvd_change,
            price_change_percent=result.price_change,
            oi_change_percent=result.oi_change,
            created_at=now_ms,
            details={
                "interval_ms": self.interval_ms,
                "snapshot_timestamp": result.latest.timestamp,
                "reference_timestamp": result.reference.timestamp,
                "cvd_delta": latest_delta,
            },
        )
        alert.id = await self.db.insert_alert(alert)
        logger.info(
            f"{symbol}: alert={alert.category}, price={alert.price_change_percent:.2f}%, "
            f"cvd={alert.cvd_change_percent:.2f}%, oi={alert.oi_change_percent:.2f}%"
        )
        return alert
