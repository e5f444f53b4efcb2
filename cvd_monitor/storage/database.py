# cvd_monitor/storage/database.py
import json
import time
from collections.abc import Iterable
from typing import Any

import aiosqlite

from .models import Alert, Snapshot, Symbol

MAX_HISTORY_LIMIT = 500

SNAPSHOT_COLUMNS = "symbol, timestamp, price, cvd, open_interest, open_interest_value"
ALERT_COLUMNS = (
    "id, symbol, category, price, cvd, cvd_change_percent, price_change_percent, "
    "oi_change_percent, created_at, details, dispatched"
)


def _row_to_alert(row: Any) -> Alert:
    return Alert(
        id=row[0],
        symbol=row[1],
        category=row[2],
        price=row[3],
        cvd=row[4],
        cvd_change_percent=row[5],
        price_change_percent=row[6],
        oi_change_percent=row[7],
        created_at=row[8],
        details=json.loads(row[9]) if row[9] else {},
        dispatched=None if row[10] is None else bool(row[10]),
    )


class Database:
    def __init__(self, path: str):
        self.path = path
        self.conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        await self._create_tables()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()

    async def _create_tables(self) -> None:
        assert self.conn is not None
        await self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS symbols (
                code TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_symbols_enabled ON symbols(enabled);

            CREATE TABLE IF NOT EXISTS snapshots (
                symbol TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                price REAL NOT NULL,
                cvd REAL NOT NULL,
                open_interest REAL,
                open_interest_value REAL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (symbol, timestamp)
            );

            CREATE TABLE IF NOT EXISTS alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol TEXT NOT NULL,
                category TEXT NOT NULL,
                price REAL NOT NULL,
                cvd REAL NOT NULL,
                cvd_change_percent REAL NOT NULL,
                price_change_percent REAL NOT NULL,
                oi_change_percent REAL NOT NULL,
                created_at INTEGER NOT NULL,
                details TEXT,
                dispatched INTEGER
            );
            CREATE INDEX IF NOT EXISTS idx_alerts_symbol_category_time
                ON alerts(symbol, category, created_at);
            CREATE INDEX IF NOT EXISTS idx_alerts_dispatched ON alerts(dispatched, created_at);
        """)
        await self.conn.commit()

    async def seed_symbols(self, codes: Iterable[str]) -> int:
        """登记配置中的交易对，已存在的保持原状 (不会重新启用)"""
        assert self.conn is not None
        rows = [(code, code.removesuffix("USDT")) for code in codes]
        before = self.conn.total_changes
        await self.conn.executemany(
            "INSERT OR IGNORE INTO symbols (code, name, enabled) VALUES (?, ?, 1)",
            rows,
        )
        await self.conn.commit()
        return self.conn.total_changes - before

    async def get_enabled_symbols(self) -> list[Symbol]:
        assert self.conn is not None
        cursor = await self.conn.execute(
            "SELECT code, name, enabled FROM symbols WHERE enabled = 1 ORDER BY code"
        )
        rows = await cursor.fetchall()
        return [Symbol(code=row[0], name=row[1], enabled=bool(row[2])) for row in rows]

    async def upsert_snapshots(self, snapshots: list[Snapshot]) -> int:
        """按 (symbol, timestamp) 幂等写入快照"""
        assert self.conn is not None
        if not snapshots:
            return 0
        await self.conn.executemany(
            f"""INSERT INTO snapshots ({SNAPSHOT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(symbol, timestamp) DO UPDATE SET
                   price = excluded.price,
                   cvd = excluded.cvd,
                   open_interest = excluded.open_interest,
                   open_interest_value = excluded.open_interest_value""",
            [
                (
                    s.symbol,
                    s.timestamp,
                    s.price,
                    s.cvd,
                    s.open_interest,
                    s.open_interest_value,
                )
                for s in snapshots
            ],
        )
        await self.conn.commit()
        return len(snapshots)

    async def get_latest_snapshot(self, symbol: str) -> Snapshot | None:
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"""SELECT {SNAPSHOT_COLUMNS} FROM snapshots WHERE symbol = ?
               ORDER BY timestamp DESC LIMIT 1""",
            (symbol,),
        )
        row = await cursor.fetchone()
        return Snapshot(*row) if row else None

    async def get_earliest_snapshot(self, symbol: str) -> Snapshot | None:
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"""SELECT {SNAPSHOT_COLUMNS} FROM snapshots WHERE symbol = ?
               ORDER BY timestamp ASC LIMIT 1""",
            (symbol,),
        )
        row = await cursor.fetchone()
        return Snapshot(*row) if row else None

    async def get_recent_snapshots(self, symbol: str, limit: int) -> list[Snapshot]:
        """最近 N 条快照，最新的在前"""
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"""SELECT {SNAPSHOT_COLUMNS} FROM snapshots WHERE symbol = ?
               ORDER BY timestamp DESC LIMIT ?""",
            (symbol, limit),
        )
        rows = await cursor.fetchall()
        return [Snapshot(*row) for row in rows]

    async def get_snapshots_range(self, symbol: str, start: int, end: int) -> list[Snapshot]:
        """[start, end) 区间内的快照，按时间升序"""
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"""SELECT {SNAPSHOT_COLUMNS} FROM snapshots
               WHERE symbol = ? AND timestamp >= ? AND timestamp < ?
               ORDER BY timestamp ASC""",
            (symbol, start, end),
        )
        rows = await cursor.fetchall()
        return [Snapshot(*row) for row in rows]

    async def get_history(self, symbol: str, limit: int = 180) -> list[Snapshot]:
        """最近 limit 条快照，按时间升序返回 (limit 限制在 1~500)"""
        safe_limit = min(max(1, limit), MAX_HISTORY_LIMIT)
        snapshots = await self.get_recent_snapshots(symbol, safe_limit)
        snapshots.reverse()
        return snapshots

    async def insert_alert(self, alert: Alert) -> int:
        assert self.conn is not None
        cursor = await self.conn.execute(
            """INSERT INTO alerts
               (symbol, category, price, cvd, cvd_change_percent, price_change_percent,
                oi_change_percent, created_at, details, dispatched)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                alert.symbol,
                alert.category,
                alert.price,
                alert.cvd,
                alert.cvd_change_percent,
                alert.price_change_percent,
                alert.oi_change_percent,
                alert.created_at,
                json.dumps(alert.details),
                None if alert.dispatched is None else int(alert.dispatched),
            ),
        )
        await self.conn.commit()
        return cursor.lastrowid or 0

    async def has_recent_alert(self, symbol: str, category: str, since_ms: int) -> bool:
        """检查冷却期内是否已有同类告警"""
        assert self.conn is not None
        cursor = await self.conn.execute(
            """SELECT 1 FROM alerts
               WHERE symbol = ? AND category = ? AND created_at >= ?
               LIMIT 1""",
            (symbol, category, since_ms),
        )
        row = await cursor.fetchone()
        return row is not None

    async def get_alerts(self, symbol: str, limit: int = 20) -> list[Alert]:
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"""SELECT {ALERT_COLUMNS} FROM alerts WHERE symbol = ?
               ORDER BY created_at DESC LIMIT ?""",
            (symbol, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_alert(row) for row in rows]

    async def get_pending_alerts(self, limit: int = 100) -> list[Alert]:
        """未推送的告警，按时间从旧到新"""
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"""SELECT {ALERT_COLUMNS} FROM alerts WHERE dispatched IS NULL
               ORDER BY created_at ASC, id ASC LIMIT ?""",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [_row_to_alert(row) for row in rows]

    async def mark_alert_dispatched(self, alert_id: int) -> None:
        assert self.conn is not None
        await self.conn.execute("UPDATE alerts SET dispatched = 1 WHERE id = ?", (alert_id,))
        await self.conn.commit()

    async def cleanup_old_data(
        self, retention_days: int, now_ms: int | None = None
    ) -> dict[str, int]:
        """清理过期快照与告警"""
        assert self.conn is not None
        if now_ms is None:
            now_ms = int(time.time() * 1000)
        cutoff = now_ms - retention_days * 24 * 3600 * 1000

        deleted: dict[str, int] = {}
        cursor = await self.conn.execute("DELETE FROM snapshots WHERE timestamp < ?", (cutoff,))
        deleted["snapshots"] = cursor.rowcount
        cursor = await self.conn.execute("DELETE FROM alerts WHERE created_at < ?", (cutoff,))
        deleted["alerts"] = cursor.rowcount
        await self.conn.commit()
        return deleted
