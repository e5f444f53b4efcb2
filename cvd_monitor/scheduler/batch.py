import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass, field

from cvd_monitor.alert.whale import WhaleSignal
from cvd_monitor.pipeline import SymbolOutcome

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    total: int = 0
    successful: int = 0
    failed: int = 0
    snapshots_written: int = 0
    alerts: int = 0
    whale_signals: list[WhaleSignal] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)  # 交易对 -> 错误信息
    batch_sizes: list[int] = field(default_factory=list)


def chunked(items: Sequence[str], size: int) -> Iterator[list[str]]:
    if size < 1:
        raise ValueError(f"batch size must be positive, got {size}")
    for i in range(0, len(items), size):
        yield list(items[i : i + size])


class BatchScheduler:
    """分批并发处理交易对

    批内并发，批间暂停 batch_delay_seconds 以控制请求速率，最后一批之后不暂停。
    单个交易对的失败只计数，不影响其他交易对。
    """

    def __init__(
        self,
        process: Callable[[str], Awaitable[SymbolOutcome]],
        batch_size: int = 3,
        batch_delay_seconds: float = 1.2,
    ):
        self.process = process
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds

    async def run(self, symbols: Sequence[str]) -> RunSummary:
        summary = RunSummary(total=len(symbols))
        batches = list(chunked(symbols, self.batch_size))

        for index, batch in enumerate(batches):
            summary.batch_sizes.append(len(batch))
            logger.info(f"Processing batch {index + 1}/{len(batches)}: {', '.join(batch)}")

            results = await asyncio.gather(
                *(self.process(symbol) for symbol in batch), return_exceptions=True
            )
            for symbol, result in zip(batch, results):
                if isinstance(result, BaseException):
                    summary.failed += 1
                    summary.failures[symbol] = str(result) or type(result).__name__
                    logger.error(f"Failed to process {symbol}: {result!r}")
                    continue
                summary.successful += 1
                summary.snapshots_written += result.snapshots_written
                if result.alert is not None:
                    summary.alerts += 1
                if result.whale_signal is not None:
                    summary.whale_signals.append(result.whale_signal)

            if index < len(batches) - 1:
                await asyncio.sleep(self.batch_delay_seconds)

        return summary
