"""
CVD 快照采集与告警

用法:
    python -m cvd_monitor.main collect
    python -m cvd_monitor.main backfill --symbol BTCUSDT --hours 24
    python -m cvd_monitor.main dispatch
    python -m cvd_monitor.main history --symbol BTCUSDT --limit 180
"""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from dataclasses import asdict
from pathlib import Path

from cvd_monitor.alert.classifier import AlertClassifier
from cvd_monitor.client.binance import BinanceClient, InvalidSymbolError, validate_symbol
from cvd_monitor.collector.history_backfiller import BackfillResult, HistoryBackfiller
from cvd_monitor.collector.series_fetcher import SeriesFetcher
from cvd_monitor.collector.snapshot_aggregator import SnapshotAggregator
from cvd_monitor.config import Config, load_config
from cvd_monitor.notifier.formatter import format_whale_signal
from cvd_monitor.notifier.telegram import TelegramNotifier, dispatch_pending_alerts
from cvd_monitor.pipeline import SymbolPipeline
from cvd_monitor.scheduler.batch import BatchScheduler, RunSummary
from cvd_monitor.storage.database import Database
from cvd_monitor.storage.models import Snapshot

logger = logging.getLogger(__name__)


class CvdMonitor:
    def __init__(self, config: Config):
        self.config = config
        self.db = Database(config.database.path)
        self.client = BinanceClient(
            base_url=config.binance.base_url,
            timeout_seconds=config.binance.timeout_seconds,
            max_retries=config.binance.max_retries,
            retry_base_delay=config.binance.retry_base_delay_ms / 1000,
            retry_jitter=config.binance.retry_jitter_ms / 1000,
        )

        interval_ms = config.snapshot.interval_ms
        self.fetcher = SeriesFetcher(
            self.client,
            interval_ms,
            config.snapshot.period,
            trade_page_limit=config.snapshot.trade_page_limit,
            max_trade_pages=config.snapshot.max_trade_pages,
        )
        self.aggregator = SnapshotAggregator(
            self.db, self.fetcher, interval_ms, config.snapshot.default_backfill_intervals
        )
        self.backfiller = HistoryBackfiller(self.db, self.fetcher, interval_ms)
        self.classifier = AlertClassifier(self.db, config.alerts, interval_ms)
        self.pipeline = SymbolPipeline(
            self.db, self.client, self.aggregator, self.classifier, config.whale
        )
        self.scheduler = BatchScheduler(
            self.pipeline.process,
            batch_size=config.scheduler.batch_size,
            batch_delay_seconds=config.scheduler.batch_delay_ms / 1000,
        )

    async def init(self) -> None:
        # Ensure data directory exists
        Path(self.config.database.path).parent.mkdir(parents=True, exist_ok=True)

        await self.db.init()
        await self.client.init()

    async def close(self) -> None:
        await self.client.close()
        await self.db.close()

    async def collect(self) -> RunSummary:
        """采集一轮：所有启用的交易对补齐快照、分类告警，最后清理过期数据"""
        added = await self.db.seed_symbols(self.config.symbols)
        if added:
            logger.info(f"Registered {added} new symbols")

        symbols = [s.code for s in await self.db.get_enabled_symbols()]
        if not symbols:
            logger.warning("No enabled symbols, nothing to collect")
            return RunSummary()

        logger.info(f"Collecting {len(symbols)} symbols in batches of {self.config.scheduler.batch_size}")
        summary = await self.scheduler.run(symbols)

        try:
            deleted = await self.db.cleanup_old_data(self.config.database.retention_days)
            total = sum(deleted.values())
            if total > 0:
                logger.info(f"Cleaned up {total} old records: {deleted}")
        except Exception as e:
            logger.error(f"Failed to cleanup old data: {e}")

        logger.info(
            f"Run finished: {summary.successful}/{summary.total} succeeded, "
            f"{summary.failed} failed, {summary.snapshots_written} snapshots, "
            f"{summary.alerts} alerts, {len(summary.whale_signals)} whale signals"
        )
        for symbol, error in summary.failures.items():
            logger.info(f"  {symbol}: {error}")
        for signal in summary.whale_signals:
            logger.info(format_whale_signal(signal))
        return summary

    async def backfill(self, symbol: str, hours: int) -> BackfillResult:
        return await self.backfiller.backfill(validate_symbol(symbol), hours_back=hours)

    async def dispatch(self) -> int:
        if self.config.telegram is None:
            logger.warning("Telegram not configured, skipping dispatch")
            return 0
        notifier = TelegramNotifier(self.config.telegram.bot_token, self.config.telegram.chat_id)
        return await dispatch_pending_alerts(self.db, notifier)

    async def history(self, symbol: str, limit: int) -> list[Snapshot]:
        return await self.db.get_history(validate_symbol(symbol), limit)


def parse_args(args: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="CVD 快照采集与告警")
    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="配置文件路径 (默认: config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="日志级别 (默认: INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("collect", help="采集一轮快照并生成告警")

    backfill = subparsers.add_parser("backfill", help="回填历史 CVD")
    backfill.add_argument("--symbol", type=str, required=True, help="交易对，如 BTCUSDT")
    backfill.add_argument("--hours", type=int, default=24, help="回填小时数 (默认: 24)")

    subparsers.add_parser("dispatch", help="推送未发送的告警到 Telegram")

    history = subparsers.add_parser("history", help="输出历史快照 (JSON)")
    history.add_argument("--symbol", type=str, required=True, help="交易对，如 BTCUSDT")
    history.add_argument("--limit", type=int, default=180, help="条数 (1~500，默认: 180)")

    return parser.parse_args(args)


def load(path: Path) -> Config:
    if not path.exists():
        logger.warning(f"Config file {path} not found, using defaults")
        return Config()
    return load_config(path)


async def run(args: argparse.Namespace) -> int:
    monitor = CvdMonitor(load(Path(args.config)))
    await monitor.init()
    try:
        if args.command == "collect":
            await monitor.collect()
        elif args.command == "backfill":
            result = await monitor.backfill(args.symbol, args.hours)
            logger.info(f"Backfill done: {result.points} snapshots for {result.symbol}")
        elif args.command == "dispatch":
            await monitor.dispatch()
        elif args.command == "history":
            snapshots = await monitor.history(args.symbol, args.limit)
            print(json.dumps([asdict(s) for s in snapshots], ensure_ascii=False))
    except InvalidSymbolError as e:
        logger.error(str(e))
        return 1
    finally:
        await monitor.close()
    return 0


def main(args: Sequence[str] | None = None) -> int:
    parsed = parse_args(args)
    logging.basicConfig(
        level=getattr(logging, parsed.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return asyncio.run(run(parsed))


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
