from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Iterable

from ..models import MetricRecord, parse_rfc3339_datetime, utc_now


@dataclass(slots=True)
class SqliteRecordStore:
    """
    默认记录存储：SQLite

    表设计：
    - metric_records：每个指标一行，保存 last_attempt / last_update / last_status

    cursor 本身不落盘（每次从目标系统重新推导），这里只保存状态与新鲜度。
    每次操作使用独立连接，可被并发的指标更新线程共享。
    """

    sqlite_path: str

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.sqlite_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS metric_records (
                    name TEXT PRIMARY KEY,
                    last_attempt TEXT NOT NULL,
                    last_update TEXT NOT NULL,
                    last_status TEXT NOT NULL,
                    saved_at TEXT NOT NULL
                )
                """
            )

    def load(self, name: str) -> MetricRecord:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT last_attempt, last_update, last_status FROM metric_records WHERE name = ?",
                (name,),
            ).fetchone()
        if not row:
            return MetricRecord(name=name)
        return MetricRecord(
            name=name,
            last_attempt=parse_rfc3339_datetime(row["last_attempt"]),
            last_update=parse_rfc3339_datetime(row["last_update"]),
            last_status=row["last_status"],
        )

    def save(self, record: MetricRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO metric_records(name, last_attempt, last_update, last_status, saved_at)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    last_attempt=excluded.last_attempt,
                    last_update=excluded.last_update,
                    last_status=excluded.last_status,
                    saved_at=excluded.saved_at
                """,
                (
                    record.name,
                    record.last_attempt.isoformat(),
                    record.last_update.isoformat(),
                    record.last_status,
                    utc_now().isoformat(),
                ),
            )

    def cleanup(self, keep_names: Iterable[str]) -> int:
        keep = set(keep_names)
        with self._connect() as conn:
            names = [r["name"] for r in conn.execute("SELECT name FROM metric_records").fetchall()]
            stale = [n for n in names if n not in keep]
            conn.executemany("DELETE FROM metric_records WHERE name = ?", [(n,) for n in stale])
        return len(stale)
