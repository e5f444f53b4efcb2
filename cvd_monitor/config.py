# cvd_monitor/config.py
from pathlib import Path

import yaml
from pydantic import BaseModel


class BinanceConfig(BaseModel):
    base_url: str = "https://fapi.binance.com"
    timeout_seconds: float = 12
    max_retries: int = 3
    retry_base_delay_ms: int = 600
    retry_jitter_ms: int = 200


class SnapshotConfig(BaseModel):
    interval_minutes: int = 5
    default_backfill_intervals: int = 24  # 冷启动回填的桶数
    trade_page_limit: int = 1000
    max_trade_pages: int = 100

    @property
    def interval_ms(self) -> int:
        return self.interval_minutes * 60 * 1000

    @property
    def period(self) -> str:
        """Binance K 线/持仓量周期参数，如 5m"""
        return f"{self.interval_minutes}m"


class AlertRulesConfig(BaseModel):
    strong_breakout_cvd_pct: float = 8
    strong_breakout_price_pct: float = 3
    strong_breakout_oi_pct: float = 3

    accumulation_cvd_pct: float = 12
    accumulation_price_abs_pct: float = 1
    accumulation_oi_min_pct: float = 0

    distribution_cvd_pct: float = -4
    distribution_price_pct: float = 1
    distribution_oi_max_pct: float = 0

    short_confirm_cvd_pct: float = -6
    short_confirm_price_pct: float = -2
    short_confirm_oi_pct: float = 1

    top_divergence_window: int = 12
    top_divergence_price_ratio: float = 0.999
    top_divergence_cvd_ratio: float = 0.92

    # 超过该幅度视为数据异常
    anomaly_cvd_pct: float = 150
    anomaly_price_pct: float = 50


class AlertsConfig(BaseModel):
    enabled: bool = True
    cooldown_minutes: int = 15
    history_limit: int = 60
    rules: AlertRulesConfig = AlertRulesConfig()


class WhaleConfig(BaseModel):
    enabled: bool = True
    history_points: int = 3
    min_oi_value_usd: float = 300_000

    accumulation_oi_pct: float = 20
    accumulation_price_abs_pct: float = 1.5
    accumulation_oi_volume_ratio: float = 0.25

    distribution_oi_pct: float = -15

    wash_rise_pct: float = 20
    wash_fall_pct: float = -15
    wash_net_abs_pct: float = 3
    wash_price_abs_pct: float = 2


class SchedulerConfig(BaseModel):
    batch_size: int = 3
    batch_delay_ms: int = 1200


class TelegramConfig(BaseModel):
    bot_token: str
    chat_id: str


class DatabaseConfig(BaseModel):
    path: str = "data/cvd_monitor.db"
    retention_days: int = 7


class Config(BaseModel):
    symbols: list[str] = ["BTCUSDT", "ETHUSDT"]
    binance: BinanceConfig = BinanceConfig()
    snapshot: SnapshotConfig = SnapshotConfig()
    alerts: AlertsConfig = AlertsConfig()
    whale: WhaleConfig = WhaleConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    telegram: TelegramConfig | None = None
    database: DatabaseConfig = DatabaseConfig()


def load_config(path: Path) -> Config:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return Config(**data)
