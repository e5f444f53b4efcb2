"""Binance Futures API 客户端"""

import asyncio
import json
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from cvd_monitor.client.models import AggTrade, Kline, OpenInterest, Ticker24h

logger = logging.getLogger(__name__)

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9]{1,10}USDT$")

# 限流 (418/429) 与服务端错误可重试
RETRYABLE_STATUS = (418, 429)


class BinanceAPIError(Exception):
    """Binance API 错误"""

    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class UpstreamUnavailableError(Exception):
    """重试耗尽后仍无法访问上游"""

    def __init__(self, endpoint: str, attempts: int, last_error: Exception | None = None):
        self.endpoint = endpoint
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{endpoint} unavailable after {attempts} attempts: {last_error}")


class InvalidSymbolError(ValueError):
    """交易对格式不合法"""


def validate_symbol(symbol: str) -> str:
    """校验交易对格式，防止注入查询参数"""
    if not isinstance(symbol, str) or not SYMBOL_PATTERN.match(symbol):
        raise InvalidSymbolError(f"Invalid symbol format: {symbol!r}")
    return symbol


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUS or status >= 500


@dataclass
class BinanceClient:
    """Binance Futures API 客户端

    所有上游请求都经过 `_request`，对限流/5xx/超时做指数退避重试。
    """

    base_url: str = "https://fapi.binance.com"
    timeout_seconds: float = 12.0
    max_retries: int = 3
    retry_base_delay: float = 0.6
    retry_jitter: float = 0.2
    _session: aiohttp.ClientSession | None = field(default=None, repr=False)

    def backoff_delay(self, attempt: int) -> float:
        """第 attempt 次失败后的等待时间 (秒)"""
        return self.retry_base_delay * (2**attempt) + random.uniform(0, self.retry_jitter)

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """发送 HTTP 请求，失败时按退避策略重试"""
        if self._session is None:
            raise RuntimeError("Session not initialized. Call init() or use 'async with'.")

        url = f"{self.base_url}{endpoint}"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        last_error: Exception | None = None
        attempts = 0

        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            try:
                if method == "GET":
                    response = await self._session.get(url, params=params, timeout=timeout)
                else:
                    response = await self._session.post(url, data=params, timeout=timeout)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                logger.debug(f"Request {endpoint} failed (attempt={attempts}): {e!r}")
            else:
                if response.status == 200:
                    return await response.json()

                error_text = await response.text()
                error = self._parse_error(response.status, error_text)
                if not is_retryable_status(response.status):
                    raise error
                last_error = error
                logger.warning(f"Request {endpoint} got HTTP {response.status} (attempt={attempts})")

            if attempt < self.max_retries:
                await asyncio.sleep(self.backoff_delay(attempt))

        raise UpstreamUnavailableError(endpoint, attempts, last_error)

    @staticmethod
    def _parse_error(status: int, error_text: str) -> BinanceAPIError:
        try:
            error_data = json.loads(error_text)
        except json.JSONDecodeError:
            return BinanceAPIError(status, error_text)
        if not isinstance(error_data, dict):
            return BinanceAPIError(status, error_text)
        return BinanceAPIError(error_data.get("code", status), error_data.get("msg", error_text))

    async def init(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "BinanceClient":
        await self.init()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def get_agg_trades(
        self,
        symbol: str,
        start_time: int | None = None,
        from_id: int | None = None,
        limit: int = 1000,
    ) -> list[AggTrade]:
        """获取归集成交，按 startTime 或 fromId 向前翻页"""
        params: dict[str, Any] = {"symbol": validate_symbol(symbol), "limit": limit}
        if from_id is not None:
            params["fromId"] = from_id
        elif start_time is not None:
            params["startTime"] = start_time

        data = await self._request("GET", "/fapi/v1/aggTrades", params)
        return [
            AggTrade(
                agg_id=int(t["a"]),
                price=float(t["p"]),
                quantity=float(t["q"]),
                timestamp=int(t["T"]),
                is_buyer_maker=bool(t["m"]),
            )
            for t in data
        ]

    async def get_mark_price_klines(
        self,
        symbol: str,
        interval: str,
        start_time: int,
        end_time: int,
        limit: int = 500,
    ) -> list[Kline]:
        """获取标记价格 K 线"""
        data = await self._request(
            "GET",
            "/fapi/v1/markPriceKlines",
            {
                "symbol": validate_symbol(symbol),
                "interval": interval,
                "startTime": start_time,
                "endTime": end_time,
                "limit": limit,
            },
        )
        return [
            Kline(
                open_time=int(k[0]),
                open=float(k[1]),
                high=float(k[2]),
                low=float(k[3]),
                close=float(k[4]),
                close_time=int(k[6]),
            )
            for k in data
        ]

    async def get_open_interest_hist(
        self,
        symbol: str,
        period: str,
        limit: int = 30,
        start_time: int | None = None,
        end_time: int | None = None,
    ) -> list[OpenInterest]:
        """获取历史持仓量 (按时间升序)

        不传时间范围时返回截至当前的最近 limit 条
        """
        params: dict[str, Any] = {"symbol": validate_symbol(symbol), "period": period, "limit": limit}
        if start_time is not None:
            params["startTime"] = start_time
        if end_time is not None:
            params["endTime"] = end_time

        data = await self._request("GET", "/futures/data/openInterestHist", params)
        return [
            OpenInterest(
                symbol=d["symbol"],
                open_interest=float(d["sumOpenInterest"]),
                open_interest_value=float(d["sumOpenInterestValue"]),
                timestamp=int(d["timestamp"]),
            )
            for d in data
        ]

    async def get_ticker_24h(self, symbol: str) -> Ticker24h:
        """获取 24 小时行情"""
        data = await self._request(
            "GET", "/fapi/v1/ticker/24hr", {"symbol": validate_symbol(symbol)}
        )
        return Ticker24h(
            symbol=data["symbol"],
            last_price=float(data["lastPrice"]),
            price_change_percent=float(data["priceChangePercent"]),
            quote_volume=float(data["quoteVolume"]),
        )
