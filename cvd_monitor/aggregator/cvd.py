import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass, field

from cvd_monitor.aggregator.buckets import align_to_interval
from cvd_monitor.aggregator.oi import OIPoint
from cvd_monitor.client.models import AggTrade
from cvd_monitor.storage.models import Snapshot

logger = logging.getLogger(__name__)


@dataclass
class BucketWalk:
    snapshots: list[Snapshot] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)  # 缺价格被跳过的桶
    final_cvd: float = 0.0


def fold_trade_deltas(
    trades: Iterable[AggTrade],
    interval_ms: int,
    start: int,
    end_exclusive: int,
) -> dict[int, float]:
    """把成交折叠为每桶的主动买卖量差"""
    deltas: dict[int, float] = {}
    for t in trades:
        if t.timestamp < start or t.timestamp >= end_exclusive:
            continue
        if not math.isfinite(t.quantity):
            continue
        bucket = align_to_interval(t.timestamp, interval_ms)
        deltas[bucket] = deltas.get(bucket, 0.0) + t.signed_quantity
    return deltas


def _finite_or_none(value: float | None) -> float | None:
    if value is None or not math.isfinite(value):
        return None
    return value


def walk_buckets(
    symbol: str,
    buckets: list[int],
    prices: dict[int, float],
    open_interest: dict[int, OIPoint],
    deltas: dict[int, float],
    previous: Snapshot | None = None,
    initial_cvd: float | None = None,
) -> BucketWalk:
    """按时间顺序生成快照

    价格与持仓量缺失时沿用上一个已知值；没有任何可用价格的桶会被跳过，
    但它的 CVD 增量仍然累加，留给下一个有价格的桶。
    """
    if initial_cvd is not None:
        running_cvd = initial_cvd
    else:
        running_cvd = previous.cvd if previous else 0.0
    last_price = _finite_or_none(previous.price) if previous else None
    last_oi = _finite_or_none(previous.open_interest) if previous else None
    last_oi_value = _finite_or_none(previous.open_interest_value) if previous else None

    result = BucketWalk()
    for bucket in sorted(buckets):
        running_cvd += deltas.get(bucket, 0.0)

        price = _finite_or_none(prices.get(bucket))
        if price is None:
            price = last_price
        oi_point = open_interest.get(bucket)
        oi = _finite_or_none(oi_point.contracts) if oi_point else None
        oi_value = _finite_or_none(oi_point.value) if oi_point else None
        if oi is None:
            oi = last_oi
        if oi_value is None:
            oi_value = last_oi_value

        if price is None:
            logger.warning(f"{symbol}: missing price for bucket {bucket}, skipping snapshot")
            result.skipped.append(bucket)
            continue

        result.snapshots.append(
            Snapshot(
                symbol=symbol,
                timestamp=bucket,
                price=price,
                cvd=running_cvd,
                open_interest=oi,
                open_interest_value=oi_value,
            )
        )
        last_price = price
        last_oi = oi
        last_oi_value = oi_value

    result.final_cvd = running_cvd
    return result
