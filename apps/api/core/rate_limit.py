import sqlite3
import time
from pathlib import Path


class SQLiteRateLimiter:
    """Fixed-window counter shared across worker processes through a local SQLite file."""

    def __init__(self, db_path: str, limit_per_minute: int) -> None:
        if limit_per_minute <= 0:
            raise ValueError("limit_per_minute must be > 0")
        self.db_path = db_path
        self.limit_per_minute = limit_per_minute
        self.window_seconds = 60
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _init_db(self) -> None:
        path = Path(self.db_path)
        if path.parent and str(path.parent) not in ("", "."):
            path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_limit_counters (
                    identity TEXT NOT NULL,
                    window INTEGER NOT NULL,
                    count INTEGER NOT NULL,
                    PRIMARY KEY(identity, window)
                )
                """
            )
            conn.commit()

    def allow(self, identity: str, limit: int | None = None) -> bool:
        effective_limit = limit if limit is not None and limit > 0 else self.limit_per_minute
        window = int(time.time()) // self.window_seconds
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "DELETE FROM rate_limit_counters WHERE window < ?",
                (window - 2,),
            )
            conn.execute(
                """
                INSERT INTO rate_limit_counters(identity, window, count) VALUES(?, ?, 1)
                ON CONFLICT(identity, window) DO UPDATE SET count = count + 1
                """,
                (identity, window),
            )
            row = conn.execute(
                "SELECT count FROM rate_limit_counters WHERE identity = ? AND window = ?",
                (identity, window),
            ).fetchone()
            conn.commit()
            return int(row[0]) <= effective_limit
