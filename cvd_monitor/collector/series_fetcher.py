import logging
import math
from dataclasses import dataclass

from cvd_monitor.aggregator.buckets import align_to_interval
from cvd_monitor.aggregator.cvd import fold_trade_deltas
from cvd_monitor.aggregator.oi import OIPoint, bucket_open_interest
from cvd_monitor.client.binance import BinanceClient
from cvd_monitor.client.models import AggTrade, Kline, OpenInterest

logger = logging.getLogger(__name__)

# Binance 接口单次上限
MAX_KLINE_LIMIT = 1500
MAX_OI_HIST_LIMIT = 500


@dataclass
class TradePages:
    trades: list[AggTrade]
    pages: int
    truncated: bool = False


@dataclass
class TradeDeltas:
    deltas: dict[int, float]
    complete_until: int  # 此时间之前的桶成交完整 (不含)


class SeriesFetcher:
    """按时间区间拉取标记价格、持仓量与成交三条序列

    每条序列独立失败：出错时记录日志并返回已拉到的部分，由调用方沿用上一个已知值。
    """

    def __init__(
        self,
        client: BinanceClient,
        interval_ms: int,
        period: str,
        trade_page_limit: int = 1000,
        max_trade_pages: int = 100,
    ):
        self.client = client
        self.interval_ms = interval_ms
        self.period = period
        self.trade_page_limit = trade_page_limit
        self.max_trade_pages = max_trade_pages

    def _windows(self, start: int, end_exclusive: int, max_points: int) -> list[tuple[int, int]]:
        """把区间切成每段最多 max_points 个桶"""
        step = self.interval_ms * max_points
        return [(s, min(s + step, end_exclusive)) for s in range(start, end_exclusive, step)]

    async def fetch_mark_prices(
        self, symbol: str, start: int, end_exclusive: int
    ) -> dict[int, float]:
        """每桶的标记价格收盘价"""
        klines: list[Kline] = []
        for window_start, window_end in self._windows(start, end_exclusive, MAX_KLINE_LIMIT):
            bucket_count = max(1, math.ceil((window_end - window_start) / self.interval_ms))
            try:
                klines += await self.client.get_mark_price_klines(
                    symbol,
                    self.period,
                    window_start,
                    window_end - 1,
                    limit=min(MAX_KLINE_LIMIT, bucket_count + 5),
                )
            except Exception as e:
                logger.warning(f"Failed to fetch mark price klines for {symbol}: {e}")
                break

        prices: dict[int, float] = {}
        for k in klines:
            if math.isfinite(k.close):
                prices[align_to_interval(k.open_time, self.interval_ms)] = k.close
        return prices

    async def fetch_open_interest(
        self, symbol: str, start: int, end_exclusive: int
    ) -> dict[int, OIPoint]:
        """每桶的持仓张数与持仓价值

        按 startTime/endTime 分段请求，不依赖接口默认返回的最近 N 条。
        """
        samples: list[OpenInterest] = []
        for window_start, window_end in self._windows(start, end_exclusive, MAX_OI_HIST_LIMIT):
            try:
                samples += await self.client.get_open_interest_hist(
                    symbol,
                    self.period,
                    limit=MAX_OI_HIST_LIMIT,
                    start_time=window_start,
                    end_time=window_end - 1,
                )
            except Exception as e:
                logger.warning(f"Failed to fetch open interest for {symbol}: {e}")
                break
        return bucket_open_interest(samples, self.interval_ms, start, end_exclusive)

    async def fetch_trades(self, symbol: str, start: int, end_exclusive: int) -> TradePages:
        """从区间起点向前翻页拉取归集成交

        以下任一情况停止翻页：空页、不满一页、出现超过区间终点的成交、达到页数上限。
        中途失败时保留已拉取的部分。
        """
        trades: list[AggTrade] = []
        pages = 0
        from_id: int | None = None

        while pages < self.max_trade_pages:
            try:
                if from_id is None:
                    page = await self.client.get_agg_trades(
                        symbol, start_time=start, limit=self.trade_page_limit
                    )
                else:
                    page = await self.client.get_agg_trades(
                        symbol, from_id=from_id, limit=self.trade_page_limit
                    )
            except Exception as e:
                logger.warning(f"Failed to fetch agg trades for {symbol} (page {pages + 1}): {e}")
                break
            pages += 1

            if not page:
                break
            trades.extend(page)

            if page[-1].timestamp >= end_exclusive or len(page) < self.trade_page_limit:
                break
            from_id = page[-1].agg_id + 1
        else:
            logger.warning(
                f"{symbol}: trade pagination stopped at {pages} pages, "
                f"resuming from the last fetched trade next run"
            )
            return TradePages(trades=trades, pages=pages, truncated=True)

        logger.debug(f"{symbol}: fetched {len(trades)} trades in {pages} pages")
        return TradePages(trades=trades, pages=pages)

    async def fetch_trade_deltas(
        self, symbol: str, start: int, end_exclusive: int
    ) -> TradeDeltas:
        """每桶的 CVD 增量

        翻页被截断时，最后一笔成交所在的桶及之后都不完整，只返回它之前的桶。
        """
        result = await self.fetch_trades(symbol, start, end_exclusive)
        complete_until = end_exclusive
        if result.truncated:
            last = result.trades[-1].timestamp if result.trades else start
            complete_until = max(start, min(align_to_interval(last, self.interval_ms), end_exclusive))
        deltas = fold_trade_deltas(result.trades, self.interval_ms, start, complete_until)
        return TradeDeltas(deltas=deltas, complete_until=complete_until)
