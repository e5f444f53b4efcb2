from dataclasses import dataclass

from cvd_monitor.aggregator.buckets import align_to_interval
from cvd_monitor.aggregator.change import safe_percent_change
from cvd_monitor.client.models import OpenInterest
from cvd_monitor.storage.models import Snapshot


@dataclass
class OIPoint:
    contracts: float | None
    value: float | None


def bucket_open_interest(
    samples: list[OpenInterest],
    interval_ms: int,
    start: int,
    end_exclusive: int,
) -> dict[int, OIPoint]:
    """按桶整理持仓量采样，丢弃区间外的数据"""
    result: dict[int, OIPoint] = {}
    for s in samples:
        bucket = align_to_interval(s.timestamp, interval_ms)
        if bucket < start or bucket >= end_exclusive:
            continue
        result[bucket] = OIPoint(contracts=s.open_interest, value=s.open_interest_value)
    return result


def calculate_oi_change(current: Snapshot, past: Snapshot) -> float:
    """快照间的持仓变化百分比

    两边都有持仓价值时用价值，否则用张数，都缺失时为 0。
    """
    if current.open_interest_value is not None and past.open_interest_value is not None:
        return safe_percent_change(current.open_interest_value, past.open_interest_value)
    if current.open_interest is not None and past.open_interest is not None:
        return safe_percent_change(current.open_interest, past.open_interest)
    return 0.0


def snapshots_to_oi_history(snapshots: list[Snapshot]) -> list[OpenInterest]:
    """快照 (最新在前) 转为持仓量历史，跳过没有持仓价值的快照"""
    return [
        OpenInterest(
            symbol=s.symbol,
            open_interest=s.open_interest or 0.0,
            open_interest_value=s.open_interest_value,
            timestamp=s.timestamp,
        )
        for s in snapshots
        if s.open_interest_value is not None
    ]
