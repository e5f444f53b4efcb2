import asyncio
import logging
import time
from dataclasses import dataclass, field

from cvd_monitor.aggregator.buckets import align_to_interval, generate_buckets
from cvd_monitor.aggregator.cvd import walk_buckets
from cvd_monitor.collector.series_fetcher import SeriesFetcher
from cvd_monitor.storage.database import Database
from cvd_monitor.storage.models import Snapshot

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    symbol: str
    buckets: int = 0
    written: list[Snapshot] = field(default_factory=list)
    skipped: int = 0
    latest_delta: float = 0.0  # 最新桶的 CVD 增量

    @property
    def latest(self) -> Snapshot | None:
        return self.written[-1] if self.written else None


class SnapshotAggregator:
    """补齐上一次快照到当前桶之间的空档

    运行中的累计 CVD 永远以库里最后一条快照为起点，不依赖进程内状态。
    """

    def __init__(
        self,
        db: Database,
        fetcher: SeriesFetcher,
        interval_ms: int,
        default_backfill_intervals: int = 24,
    ):
        self.db = db
        self.fetcher = fetcher
        self.interval_ms = interval_ms
        self.default_backfill_intervals = default_backfill_intervals

    def next_bucket(self, latest: Snapshot | None, current_bucket: int) -> int:
        """下一个需要填充的桶"""
        if latest is not None:
            return align_to_interval(latest.timestamp, self.interval_ms) + self.interval_ms
        # 冷启动：包含当前桶在内共 default_backfill_intervals 个桶
        return current_bucket - self.interval_ms * (self.default_backfill_intervals - 1)

    async def sync(self, symbol: str, now_ms: int | None = None) -> SyncResult:
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        current_bucket = align_to_interval(now_ms, self.interval_ms)

        latest = await self.db.get_latest_snapshot(symbol)
        start = self.next_bucket(latest, current_bucket)
        if start > current_bucket:
            logger.debug(f"{symbol}: snapshots already up to date")
            return SyncResult(symbol=symbol)

        buckets = generate_buckets(start, current_bucket, self.interval_ms)
        range_start = buckets[0]
        range_end = buckets[-1] + self.interval_ms

        prices, open_interest, trades = await asyncio.gather(
            self.fetcher.fetch_mark_prices(symbol, range_start, range_end),
            self.fetcher.fetch_open_interest(symbol, range_start, range_end),
            self.fetcher.fetch_trade_deltas(symbol, range_start, range_end),
        )
        # 成交不完整的桶留到下一轮，从最后一个完整桶之后继续
        if trades.complete_until < range_end:
            buckets = [b for b in buckets if b < trades.complete_until]
            logger.warning(
                f"{symbol}: trades incomplete from {trades.complete_until}, "
                f"writing {len(buckets)} buckets this run"
            )
            if not buckets:
                return SyncResult(symbol=symbol)
        deltas = trades.deltas

        walk = walk_buckets(symbol, buckets, prices, open_interest, deltas, previous=latest)
        result = SyncResult(symbol=symbol, buckets=len(buckets), skipped=len(walk.skipped))
        if not walk.snapshots:
            logger.info(f"{symbol}: no snapshot could be resolved for {len(buckets)} buckets")
            return result

        # 写库失败直接抛出，调用方不能越过无法持久化的批次
        await self.db.upsert_snapshots(walk.snapshots)
        result.written = walk.snapshots

        newest = walk.snapshots[-1]
        result.latest_delta = deltas.get(newest.timestamp, 0.0)
        logger.info(
            f"{symbol}: wrote {len(walk.snapshots)} snapshots, "
            f"price={newest.price:.4f}, delta={result.latest_delta:.2f}"
        )
        return result
