import pytest

from cvd_monitor.alert.classifier import (
    AlertCategory,
    AlertClassifier,
    classify,
    select_reference,
)
from cvd_monitor.config import AlertRulesConfig, AlertsConfig
from cvd_monitor.storage.database import Database
from cvd_monitor.storage.models import Snapshot

INTERVAL = 300_000
T0 = 1_704_067_200_000
MINUTE = 60_000


def _series(points: list[tuple[float, float, float | None]]) -> list[Snapshot]:
    """(price, cvd, oi_value) 按时间升序"""
    return [
        Snapshot("BTCUSDT", T0 + i * INTERVAL, price, cvd, open_interest=None, open_interest_value=oi)
        for i, (price, cvd, oi) in enumerate(points)
    ]


def _classify(points) -> AlertCategory:
    return classify(_series(points), INTERVAL, AlertRulesConfig()).category


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.init()
    yield database
    await database.close()


def test_select_reference_one_interval_back():
    snaps = list(reversed(_series([(1, 1, None), (2, 2, None), (3, 3, None)])))
    assert select_reference(snaps, INTERVAL) is snaps[1]


def test_select_reference_skips_too_recent_rows():
    latest = Snapshot("BTCUSDT", T0 + 10 * INTERVAL, 1, 1)
    too_close = Snapshot("BTCUSDT", T0 + 10 * INTERVAL - 1000, 1, 1)
    older = Snapshot("BTCUSDT", T0 + 8 * INTERVAL, 1, 1)
    assert select_reference([latest, too_close, older], INTERVAL) is older


def test_select_reference_falls_back_to_oldest():
    latest = Snapshot("BTCUSDT", T0 + INTERVAL, 1, 1)
    close = Snapshot("BTCUSDT", T0 + INTERVAL - 1000, 1, 1)
    assert select_reference([latest, close], INTERVAL) is close


def test_select_reference_needs_two_snapshots():
    assert select_reference([], INTERVAL) is None
    assert select_reference([Snapshot("BTCUSDT", T0, 1, 1)], INTERVAL) is None


def test_strong_breakout():
    result = classify(_series([(100, 1000, 1000), (104, 1100, 1040)]), INTERVAL, AlertRulesConfig())

    assert result.category is AlertCategory.STRONG_BREAKOUT
    assert result.cvd_change == pytest.approx(10.0)
    assert result.price_change == pytest.approx(4.0)
    assert result.oi_change == pytest.approx(4.0)


def test_strong_breakout_at_price_threshold():
    # 价格恰好 +3%，CVD +9%，OI +6%
    result = classify(_series([(100, 1000, 500), (103, 1090, 530)]), INTERVAL, AlertRulesConfig())

    assert result.category is AlertCategory.STRONG_BREAKOUT
    assert result.price_change == pytest.approx(3.0)
    assert result.cvd_change == pytest.approx(9.0)
    assert result.oi_change == pytest.approx(6.0)


def test_accumulation():
    assert _classify([(100, 1000, 1000), (100.5, 1150, 1000)]) is AlertCategory.ACCUMULATION


def test_distribution_warn():
    assert _classify([(100, 1000, 1000), (102, 950, 990)]) is AlertCategory.DISTRIBUTION_WARN


def test_short_confirm():
    assert _classify([(100, 1000, 1000), (97, 930, 1020)]) is AlertCategory.SHORT_CONFIRM


def test_no_match_is_none():
    assert _classify([(100, 1000, 1000), (100.2, 1010, 1001)]) is AlertCategory.NONE


def test_anomaly_guard_suppresses_alert():
    # CVD 变化超过 150% 视为数据异常
    result = classify(_series([(100, 100, 1000), (104, 300, 1040)]), INTERVAL, AlertRulesConfig())
    assert result.category is AlertCategory.NONE
    assert result.cvd_change == 0.0

    assert _classify([(100, 1000, 1000), (160, 1100, 1040)]) is AlertCategory.NONE


def test_zero_reference_cvd_does_not_alert():
    assert _classify([(100, 0, 1000), (104, 500, 1040)]) is AlertCategory.NONE


def test_missing_open_interest_counts_as_zero_change():
    # 没有持仓量时 OI 变化为 0，强势突破不成立，吸筹成立
    assert _classify([(100, 1000, None), (100, 1150, None)]) is AlertCategory.ACCUMULATION
    assert _classify([(100, 1000, None), (104, 1100, None)]) is AlertCategory.NONE


def _divergence_points(latest_cvd: float) -> list[tuple[float, float, float]]:
    points = [(99.0, 80.0, 1000.0)] * 9
    points.insert(3, (99.5, 100.0, 1000.0))  # 窗口内 CVD 高点
    points += [(100.0, 91.0, 1000.0), (100.0, latest_cvd, 1000.0)]
    return points


def test_top_divergence_boundary():
    # 窗口最高 CVD 为 100，阈值 100 * 0.92 = 92
    assert len(_divergence_points(92.0)) == 12
    assert _classify(_divergence_points(92.0)) is AlertCategory.NONE
    assert _classify(_divergence_points(90.0)) is AlertCategory.TOP_DIVERGENCE


def test_top_divergence_requires_full_window():
    points = _divergence_points(90.0)[1:]
    assert _classify(points) is AlertCategory.NONE


def test_first_matching_rule_wins():
    # 同时满足派发警告与顶部背离，按顺序取派发警告
    points = _divergence_points(90.0)
    points[-2] = (99.0, 95.0, 1000.0)
    assert _classify(points) is AlertCategory.DISTRIBUTION_WARN


def test_top_divergence_requires_price_near_high():
    points = _divergence_points(90.0)
    points[0] = (105.0, 80.0, 1000.0)
    assert _classify(points) is AlertCategory.NONE


async def test_evaluate_inserts_alert_with_details(db: Database):
    await db.upsert_snapshots(_series([(100, 1000, 1000), (104, 1100, 1040)]))
    classifier = AlertClassifier(db, AlertsConfig(), INTERVAL)
    now = T0 + INTERVAL + 30_000

    alert = await classifier.evaluate("BTCUSDT", latest_delta=12.5, now_ms=now)

    assert alert is not None
    assert alert.id is not None
    assert alert.category == "STRONG_BREAKOUT"
    assert alert.price == 104
    assert alert.cvd == 1100
    assert alert.details == {
        "interval_ms": INTERVAL,
        "snapshot_timestamp": T0 + INTERVAL,
        "reference_timestamp": T0,
        "cvd_delta": 12.5,
    }
    stored = await db.get_pending_alerts()
    assert [a.id for a in stored] == [alert.id]


async def test_cooldown_blocks_same_category(db: Database):
    await db.upsert_snapshots(_series([(100, 1000, 1000), (104, 1100, 1040)]))
    classifier = AlertClassifier(db, AlertsConfig(), INTERVAL)
    now = T0 + INTERVAL

    assert await classifier.evaluate("BTCUSDT", now_ms=now) is not None
    assert await classifier.evaluate("BTCUSDT", now_ms=now + 10 * MINUTE) is None
    assert await classifier.evaluate("BTCUSDT", now_ms=now + 16 * MINUTE) is not None

    assert len(await db.get_alerts("BTCUSDT")) == 2


async def test_evaluate_disabled(db: Database):
    await db.upsert_snapshots(_series([(100, 1000, 1000), (104, 1100, 1040)]))
    classifier = AlertClassifier(db, AlertsConfig(enabled=False), INTERVAL)

    assert await classifier.evaluate("BTCUSDT", now_ms=T0 + INTERVAL) is None


async def test_evaluate_without_history(db: Database):
    classifier = AlertClassifier(db, AlertsConfig(), INTERVAL)

    assert await classifier.evaluate("BTCUSDT", now_ms=T0) is None
