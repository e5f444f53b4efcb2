import asyncio
import logging
import time
from dataclasses import dataclass

from cvd_monitor.aggregator.buckets import align_to_interval, generate_buckets
from cvd_monitor.aggregator.cvd import walk_buckets
from cvd_monitor.collector.series_fetcher import SeriesFetcher
from cvd_monitor.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class BackfillResult:
    symbol: str
    points: int = 0
    offset: float = 0.0


class HistoryBackfiller:
    """回填历史 CVD

    从零重新累加窗口内的成交，再整体平移，使回填序列与库中最早一条快照无缝衔接。
    已存在的快照不会被覆盖。
    """

    def __init__(self, db: Database, fetcher: SeriesFetcher, interval_ms: int):
        self.db = db
        self.fetcher = fetcher
        self.interval_ms = interval_ms

    async def backfill(
        self, symbol: str, hours_back: int = 24, now_ms: int | None = None
    ) -> BackfillResult:
        """
        回填最近 hours_back 小时

        Returns:
            写入的快照数与 CVD 偏移量
        """
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        current_bucket = align_to_interval(now_ms, self.interval_ms)
        start = align_to_interval(now_ms - hours_back * 3600 * 1000, self.interval_ms)

        earliest = await self.db.get_earliest_snapshot(symbol)
        if earliest is not None and earliest.timestamp <= start:
            logger.info(f"{symbol}: history already covers the last {hours_back}h")
            return BackfillResult(symbol=symbol)

        # 有存量数据时算到最早快照所在的桶为止，用于计算偏移
        end_bucket = earliest.timestamp if earliest is not None else current_bucket
        buckets = generate_buckets(start, end_bucket, self.interval_ms)
        range_end = end_bucket + self.interval_ms

        prices, open_interest, trades = await asyncio.gather(
            self.fetcher.fetch_mark_prices(symbol, start, range_end),
            self.fetcher.fetch_open_interest(symbol, start, range_end),
            self.fetcher.fetch_trade_deltas(symbol, start, range_end),
        )
        if trades.complete_until < range_end:
            # 偏移量需要截至最早快照的完整成交，成交不全时无法衔接
            if earliest is not None:
                logger.warning(
                    f"{symbol}: trades incomplete from {trades.complete_until}, "
                    f"backfill skipped (raise max_trade_pages or shorten --hours)"
                )
                return BackfillResult(symbol=symbol)
            buckets = [b for b in buckets if b < trades.complete_until]
            logger.warning(f"{symbol}: trades incomplete, backfilling {len(buckets)} buckets")
        walk = walk_buckets(symbol, buckets, prices, open_interest, trades.deltas, initial_cvd=0.0)

        offset = 0.0
        rows = walk.snapshots
        if earliest is not None:
            # walk.final_cvd 是截至最早快照所在桶 (含) 的累计值
            offset = earliest.cvd - walk.final_cvd
            rows = [s for s in rows if s.timestamp < earliest.timestamp]
            for s in rows:
                s.cvd += offset

        if not rows:
            logger.info(f"{symbol}: nothing to backfill")
            return BackfillResult(symbol=symbol, offset=offset)

        await self.db.upsert_snapshots(rows)
        logger.info(f"{symbol}: backfilled {len(rows)} snapshots (cvd offset {offset:.2f})")
        return BackfillResult(symbol=symbol, points=len(rows), offset=offset)
