"""SQLite key-value cache for state that survives restarts."""
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import ExternalIPState

logger = logging.getLogger(__name__)

IP_KEYS = ("external_ip", "country_code", "country_name", "isp_name", "last_updated")


class Database:
    """SQLite backed cache of the last known external IP details."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._ensure_dir()
        self._init_db()

    def _ensure_dir(self):
        """Ensure database directory exists."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS cache (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
            """)

    def get(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM cache WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_many(self, values: dict[str, str]) -> None:
        with self._get_connection() as conn:
            conn.executemany(
                """
                INSERT INTO cache (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                list(values.items()),
            )

    def load_external_ip(self) -> Optional[ExternalIPState]:
        """Cached IP details, or None when nothing was stored yet."""
        with self._get_connection() as conn:
            placeholders = ",".join("?" for _ in IP_KEYS)
            rows = conn.execute(
                f"SELECT key, value FROM cache WHERE key IN ({placeholders})", IP_KEYS
            ).fetchall()
        values = {row["key"]: row["value"] for row in rows}
        if not values.get("external_ip"):
            return None

        last_updated = None
        if values.get("last_updated"):
            try:
                last_updated = datetime.fromisoformat(values["last_updated"])
            except ValueError:
                logger.warning(f"Ignoring malformed cached timestamp: {values['last_updated']}")

        return ExternalIPState(
            external_ip=values["external_ip"],
            country_code=values.get("country_code", ""),
            country_name=values.get("country_name", ""),
            isp_name=values.get("isp_name", ""),
            last_updated=last_updated,
        )

    def store_external_ip(self, state: ExternalIPState) -> None:
        values = {
            "external_ip": state.external_ip,
            "country_code": state.country_code,
            "country_name": state.country_name,
            "isp_name": state.isp_name,
        }
        if state.last_updated is not None:
            values["last_updated"] = state.last_updated.isoformat()
        self.set_many(values)
        logger.debug(f"Cached external IP {state.external_ip}")
