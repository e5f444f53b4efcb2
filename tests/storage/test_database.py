import pytest

from cvd_monitor.storage.database import Database
from cvd_monitor.storage.models import Alert, Snapshot

INTERVAL = 300_000
T0 = 1_704_067_200_000


@pytest.fixture
async def db(tmp_path):
    db_path = tmp_path / "test.db"
    database = Database(str(db_path))
    await database.init()
    yield database
    await database.close()


def _snap(i: int, cvd: float = 0.0, symbol: str = "BTCUSDT") -> Snapshot:
    return Snapshot(
        symbol=symbol,
        timestamp=T0 + i * INTERVAL,
        price=42000.0 + i,
        cvd=cvd,
        open_interest=1000.0,
        open_interest_value=42_000_000.0,
    )


def _alert(created_at: int, category: str = "STRONG_BREAKOUT", symbol: str = "BTCUSDT") -> Alert:
    return Alert(
        id=None,
        symbol=symbol,
        category=category,
        price=42000.0,
        cvd=1500.0,
        cvd_change_percent=10.0,
        price_change_percent=4.0,
        oi_change_percent=5.0,
        created_at=created_at,
        details={"interval_ms": INTERVAL},
    )


async def test_seed_symbols_insert_if_missing(db: Database):
    added = await db.seed_symbols(["BTCUSDT", "ETHUSDT"])
    assert added == 2

    # 已停用的交易对不会被重新启用
    assert db.conn is not None
    await db.conn.execute("UPDATE symbols SET enabled = 0 WHERE code = ?", ("ETHUSDT",))
    await db.conn.commit()
    added = await db.seed_symbols(["BTCUSDT", "ETHUSDT", "SOLUSDT"])
    assert added == 1

    symbols = await db.get_enabled_symbols()
    assert [s.code for s in symbols] == ["BTCUSDT", "SOLUSDT"]
    assert symbols[0].name == "BTC"


async def test_upsert_snapshots_is_idempotent(db: Database):
    await db.upsert_snapshots([_snap(0, cvd=10), _snap(1, cvd=20)])
    await db.upsert_snapshots([_snap(1, cvd=25), _snap(2, cvd=30)])

    snapshots = await db.get_snapshots_range("BTCUSDT", T0, T0 + 10 * INTERVAL)
    assert [s.cvd for s in snapshots] == [10, 25, 30]


async def test_upsert_empty_list(db: Database):
    assert await db.upsert_snapshots([]) == 0


async def test_latest_and_earliest_snapshot(db: Database):
    assert await db.get_latest_snapshot("BTCUSDT") is None

    await db.upsert_snapshots([_snap(3), _snap(1), _snap(2)])
    await db.upsert_snapshots([_snap(9, symbol="ETHUSDT")])

    latest = await db.get_latest_snapshot("BTCUSDT")
    earliest = await db.get_earliest_snapshot("BTCUSDT")
    assert latest is not None and latest.timestamp == T0 + 3 * INTERVAL
    assert earliest is not None and earliest.timestamp == T0 + INTERVAL


async def test_recent_snapshots_newest_first(db: Database):
    await db.upsert_snapshots([_snap(i) for i in range(5)])

    recent = await db.get_recent_snapshots("BTCUSDT", 3)
    assert [s.timestamp for s in recent] == [T0 + 4 * INTERVAL, T0 + 3 * INTERVAL, T0 + 2 * INTERVAL]


async def test_snapshots_range_end_exclusive(db: Database):
    await db.upsert_snapshots([_snap(i) for i in range(5)])

    snapshots = await db.get_snapshots_range("BTCUSDT", T0 + INTERVAL, T0 + 3 * INTERVAL)
    assert [s.timestamp for s in snapshots] == [T0 + INTERVAL, T0 + 2 * INTERVAL]


async def test_get_history_ascending_and_clamped(db: Database):
    await db.upsert_snapshots([_snap(i) for i in range(5)])

    history = await db.get_history("BTCUSDT", limit=3)
    assert [s.timestamp for s in history] == [T0 + 2 * INTERVAL, T0 + 3 * INTERVAL, T0 + 4 * INTERVAL]

    assert len(await db.get_history("BTCUSDT", limit=0)) == 1
    assert len(await db.get_history("BTCUSDT", limit=10_000)) == 5


async def test_alert_insert_and_cooldown_lookup(db: Database):
    alert_id = await db.insert_alert(_alert(created_at=T0))
    assert alert_id > 0

    assert await db.has_recent_alert("BTCUSDT", "STRONG_BREAKOUT", T0 - 1)
    assert not await db.has_recent_alert("BTCUSDT", "STRONG_BREAKOUT", T0 + 1)
    assert not await db.has_recent_alert("BTCUSDT", "ACCUMULATION", T0 - 1)
    assert not await db.has_recent_alert("ETHUSDT", "STRONG_BREAKOUT", T0 - 1)

    alerts = await db.get_alerts("BTCUSDT")
    assert len(alerts) == 1
    assert alerts[0].details == {"interval_ms": INTERVAL}
    assert alerts[0].dispatched is None


async def test_pending_alerts_oldest_first(db: Database):
    second = await db.insert_alert(_alert(created_at=T0 + 1000))
    first = await db.insert_alert(_alert(created_at=T0))

    pending = await db.get_pending_alerts()
    assert [a.id for a in pending] == [first, second]

    await db.mark_alert_dispatched(first)
    pending = await db.get_pending_alerts()
    assert [a.id for a in pending] == [second]


async def test_cleanup_old_data(db: Database):
    now = T0 + 10 * 24 * 3600 * 1000
    await db.upsert_snapshots([_snap(0), _snap(1)])
    recent = Snapshot(symbol="BTCUSDT", timestamp=now - INTERVAL, price=1.0, cvd=0.0)
    await db.upsert_snapshots([recent])
    await db.insert_alert(_alert(created_at=T0))
    await db.insert_alert(_alert(created_at=now))

    deleted = await db.cleanup_old_data(retention_days=7, now_ms=now)

    assert deleted == {"snapshots": 2, "alerts": 1}
    assert len(await db.get_history("BTCUSDT", limit=500)) == 1
    assert len(await db.get_alerts("BTCUSDT")) == 1
