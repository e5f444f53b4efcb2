import logging
import time
from dataclasses import dataclass

from cvd_monitor.aggregator.change import safe_percent_change
from cvd_monitor.aggregator.oi import snapshots_to_oi_history
from cvd_monitor.alert.classifier import AlertClassifier
from cvd_monitor.alert.whale import WhaleSignal, detect_whale_signal
from cvd_monitor.client.binance import BinanceClient, validate_symbol
from cvd_monitor.collector.snapshot_aggregator import SnapshotAggregator
from cvd_monitor.config import WhaleConfig
from cvd_monitor.storage.database import Database
from cvd_monitor.storage.models import Alert

logger = logging.getLogger(__name__)


@dataclass
class SymbolOutcome:
    symbol: str
    snapshots_written: int = 0
    alert: Alert | None = None
    whale_signal: WhaleSignal | None = None


class SymbolPipeline:
    """单个交易对的一次完整处理：补齐快照 → 分类告警 → 庄家信号"""

    def __init__(
        self,
        db: Database,
        client: BinanceClient,
        aggregator: SnapshotAggregator,
        classifier: AlertClassifier,
        whale_config: WhaleConfig,
    ):
        self.db = db
        self.client = client
        self.aggregator = aggregator
        self.classifier = classifier
        self.whale_config = whale_config

    async def process(self, symbol: str, now_ms: int | None = None) -> SymbolOutcome:
        # 非法交易对在发起任何请求前就拒绝
        validate_symbol(symbol)
        if now_ms is None:
            now_ms = int(time.time() * 1000)

        sync = await self.aggregator.sync(symbol, now_ms=now_ms)
        outcome = SymbolOutcome(symbol=symbol, snapshots_written=len(sync.written))
        if not sync.written:
            return outcome

        outcome.alert = await self.classifier.evaluate(
            symbol, latest_delta=sync.latest_delta, now_ms=now_ms
        )
        if self.whale_config.enabled:
            outcome.whale_signal = await self.detect_whale(symbol)
        return outcome

    async def detect_whale(self, symbol: str) -> WhaleSignal | None:
        recent = await self.db.get_recent_snapshots(symbol, self.whale_config.history_points)
        oi_history = snapshots_to_oi_history(recent)
        if len(oi_history) < 2:
            return None

        price_change = safe_percent_change(recent[0].price, recent[1].price)
        try:
            ticker = await self.client.get_ticker_24h(symbol)
            volume_24h = ticker.quote_volume
        except Exception as e:
            logger.warning(f"Failed to fetch 24h ticker for {symbol}: {e}")
            volume_24h = 0.0

        signal = detect_whale_signal(symbol, oi_history, price_change, volume_24h, self.whale_config)
        if signal:
            logger.debug(
                f"{symbol}: whale signal {signal.type.value} "
                f"(confidence={signal.confidence:.0f}) {signal.description}"
            )
        return signal
