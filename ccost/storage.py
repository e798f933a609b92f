"""
SQLite state at ~/.config/ccost/cache.db.

Holds processed message keys (persistent dedup), cached exchange rates,
user pricing overrides and usage summaries. The schema is managed by a
numbered migration ladder recorded in ``schema_version``.
"""

import os
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from ccost.config import ccost_config_dir

PRAGMAS = (
    "PRAGMA foreign_keys = ON",
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA cache_size = 1000",
    "PRAGMA temp_store = memory",
)

MIGRATION_001 = """
CREATE TABLE processed_messages (
    message_hash TEXT PRIMARY KEY,
    project_name TEXT,
    session_id TEXT,
    processed_at TEXT
);

CREATE TABLE exchange_rates (
    base_currency TEXT,
    target_currency TEXT,
    rate REAL,
    fetched_at TEXT,
    PRIMARY KEY (base_currency, target_currency)
);

CREATE TABLE model_pricing (
    model_name TEXT PRIMARY KEY,
    input_cost_per_mtok REAL,
    output_cost_per_mtok REAL,
    cache_cost_per_mtok REAL,
    last_updated TEXT
);

CREATE TABLE usage_summary (
    date TEXT,
    project_name TEXT,
    model_name TEXT,
    total_input_tokens INTEGER,
    total_output_tokens INTEGER,
    total_cache_tokens INTEGER,
    total_cost_usd REAL,
    PRIMARY KEY (date, project_name, model_name)
);
"""

# (version, script); append only
MIGRATIONS: List[Tuple[int, str]] = [
    (1, MIGRATION_001),
]


class StorageError(Exception):
    """Wraps sqlite3 failures."""


def database_path() -> str:
    return os.path.join(ccost_config_dir(), "cache.db")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    def __init__(self, path: Optional[str] = None):
        self.path = path or database_path()
        try:
            if self.path != ":memory:":
                os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
            self.conn = sqlite3.connect(self.path)
            for pragma in PRAGMAS:
                self.conn.execute(pragma)
            self.apply_migrations()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Failed to open database {self.path}: {e}") from e

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def schema_version(self) -> int:
        self.conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
        row = self.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] or 0

    def apply_migrations(self) -> int:
        """Run every migration newer than the recorded version; returns the final version."""
        current = self.schema_version()
        for version, script in MIGRATIONS:
            if version <= current:
                continue
            with self.conn:
                self.conn.executescript(f"BEGIN;\n{script}\nINSERT INTO schema_version (version) VALUES ({version});\nCOMMIT;")
            current = version
        return current

    def is_seen(self, key: str) -> bool:
        try:
            row = self.conn.execute("SELECT 1 FROM processed_messages WHERE message_hash = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"is_seen failed: {e}") from e
        return row is not None

    def mark_seen(self, key: str, project: str, session_id: Optional[str]) -> None:
        try:
            with self.conn:
                self.conn.execute(
                    "INSERT OR IGNORE INTO processed_messages (message_hash, project_name, session_id, processed_at) VALUES (?, ?, ?, ?)",
                    (key, project, session_id, _now_iso()),
                )
        except sqlite3.Error as e:
            raise StorageError(f"mark_seen failed: {e}") from e

    def get_rate(self, base: str, target: str, max_age: Optional[timedelta] = None) -> Optional[float]:
        try:
            row = self.conn.execute(
                "SELECT rate, fetched_at FROM exchange_rates WHERE base_currency = ? AND target_currency = ?",
                (base, target),
            ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"get_rate failed: {e}") from e
        if row is None:
            return None
        rate, fetched_at = row
        if max_age is not None:
            try:
                fetched = datetime.fromisoformat(fetched_at)
            except (TypeError, ValueError):
                return None
            if datetime.now(timezone.utc) - fetched > max_age:
                return None
        return float(rate)

    def put_rate(self, base: str, target: str, rate: float) -> None:
        try:
            with self.conn:
                self.conn.execute(
                    "INSERT OR REPLACE INTO exchange_rates (base_currency, target_currency, rate, fetched_at) VALUES (?, ?, ?, ?)",
                    (base, target, rate, _now_iso()),
                )
        except sqlite3.Error as e:
            raise StorageError(f"put_rate failed: {e}") from e

    def set_model_pricing(self, model: str, input_rate: float, output_rate: float, cache_rate: Optional[float] = None) -> None:
        if cache_rate is None:
            cache_rate = input_rate * 0.1
        try:
            with self.conn:
                self.conn.execute(
                    "INSERT OR REPLACE INTO model_pricing (model_name, input_cost_per_mtok, output_cost_per_mtok, cache_cost_per_mtok, last_updated) VALUES (?, ?, ?, ?, ?)",
                    (model, input_rate, output_rate, cache_rate, _now_iso()),
                )
        except sqlite3.Error as e:
            raise StorageError(f"set_model_pricing failed: {e}") from e

    def list_model_pricing(self) -> Dict[str, Tuple[float, float]]:
        """model -> (input per Mtok, output per Mtok)."""
        try:
            rows = self.conn.execute(
                "SELECT model_name, input_cost_per_mtok, output_cost_per_mtok FROM model_pricing ORDER BY model_name"
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"list_model_pricing failed: {e}") from e
        return {name: (float(inp), float(out)) for name, inp, out in rows}
