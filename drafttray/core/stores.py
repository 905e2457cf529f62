from __future__ import annotations

import json
import os
import shutil
import sqlite3
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from drafttray.core.config import DraftTrayConfig

DEFAULT_SQLITE_BUSY_TIMEOUT_MS = 5000


class KeyValueStore(Protocol):
    """Minimal synchronous key-value port (getItem/setItem/removeItem/keys)."""

    def get_item(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove_item(self, key: str) -> None:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError


def storage_json_dumps(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def storage_json_loads(value: str) -> object:
    return json.loads(value)


def open_sqlite_connection(db_path: str, busy_timeout_ms: int = DEFAULT_SQLITE_BUSY_TIMEOUT_MS) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {max(0, int(busy_timeout_ms))}")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def ensure_sqlite_component_schema(conn: sqlite3.Connection, component: str, target_version: int) -> int:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_meta (
          component TEXT PRIMARY KEY,
          version INTEGER NOT NULL,
          updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    row = conn.execute("SELECT version FROM schema_meta WHERE component = ?", (component,)).fetchone()
    if row is None:
        conn.execute(
            """
            INSERT INTO schema_meta (component, version, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            """,
            (component, target_version),
        )
        return target_version

    current_version = int(row["version"])
    if current_version > target_version:
        raise RuntimeError(
            f"Unsupported newer schema for component '{component}': {current_version} > {target_version}"
        )
    if current_version < target_version:
        conn.execute(
            """
            UPDATE schema_meta
            SET version = ?, updated_at = CURRENT_TIMESTAMP
            WHERE component = ?
            """,
            (target_version, component),
        )
    return target_version


class InMemoryKeyValueStore:
    def __init__(self) -> None:
        self._items: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = str(value)

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return [key for key in self._items if key.startswith(prefix)]


class SQLiteKeyValueStore:
    SCHEMA_COMPONENT = "kv_items"
    SCHEMA_VERSION = 1

    def __init__(self, db_path: str, *, busy_timeout_ms: int = DEFAULT_SQLITE_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._write_lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return open_sqlite_connection(self.db_path, self.busy_timeout_ms)

    def _init_db(self) -> None:
        with self._connect() as conn:
            ensure_sqlite_component_schema(conn, self.SCHEMA_COMPONENT, self.SCHEMA_VERSION)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_items (
                  item_key TEXT PRIMARY KEY,
                  item_value TEXT NOT NULL,
                  updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

    def get_item(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT item_value FROM kv_items WHERE item_key = ?", (key,)).fetchone()
        return str(row["item_value"]) if row is not None else None

    def set_item(self, key: str, value: str) -> None:
        with self._write_lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO kv_items (item_key, item_value, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(item_key) DO UPDATE SET
                      item_value=excluded.item_value,
                      updated_at=CURRENT_TIMESTAMP
                    """,
                    (key, str(value)),
                )

    def remove_item(self, key: str) -> None:
        with self._write_lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM kv_items WHERE item_key = ?", (key,))

    def keys(self, prefix: str = "") -> list[str]:
        # substr() keeps LIKE wildcards in the prefix literal.
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT item_key FROM kv_items WHERE substr(item_key, 1, ?) = ? ORDER BY item_key",
                (len(prefix), prefix),
            ).fetchall()
        return [str(row["item_key"]) for row in rows]


class JsonFileKeyValueStore:
    """Whole-file JSON object; every write goes through a temp file and os.replace."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    @property
    def backup_path(self) -> Path:
        return self.path.with_suffix(f"{self.path.suffix}.bak")

    def _read_all(self) -> Dict[str, str]:
        for candidate in (self.path, self.backup_path):
            if not candidate.is_file():
                continue
            try:
                raw = json.loads(candidate.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            if isinstance(raw, dict):
                return {str(k): str(v) for k, v in raw.items() if isinstance(v, str)}
        return {}

    def _write_all(self, items: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            try:
                shutil.copy2(self.path, self.backup_path)
            except OSError:
                pass

        fd, temp_path = tempfile.mkstemp(prefix=f"{self.path.stem}.", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
                json.dump(items, handle, indent=2, ensure_ascii=False)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read_all().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            items = self._read_all()
            items[key] = str(value)
            self._write_all(items)

    def remove_item(self, key: str) -> None:
        with self._lock:
            items = self._read_all()
            if key not in items:
                return
            del items[key]
            self._write_all(items)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(key for key in self._read_all() if key.startswith(prefix))


def create_kv_store(config: DraftTrayConfig) -> KeyValueStore:
    storage = config.storage
    if storage.mode == "sqlite":
        return SQLiteKeyValueStore(storage.sqlite_path, busy_timeout_ms=storage.sqlite_busy_timeout_ms)
    if storage.mode == "json":
        return JsonFileKeyValueStore(storage.json_path)
    return InMemoryKeyValueStore()
