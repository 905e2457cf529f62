# drafttray/core/config.py

from __future__ import annotations

import os
from typing import List

from pydantic import BaseModel

DEFAULT_ENTITY_KINDS = "program,focus-area,stakeholder,mission-vision,project,team-member"
MAX_DEBOUNCE_MS = 1000


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "true" if default else "false").strip().lower() == "true"


class StorageConfig(BaseModel):
    """Where drafts and the instance list are persisted."""
    mode: str = "inmem"
    sqlite_path: str = "./drafttray_state.db"
    sqlite_busy_timeout_ms: int = 5000
    json_path: str = "./drafttray_state.json"
    key_namespace: str = "drafttray"


class EditorConfig(BaseModel):
    """Form Host behaviour."""
    debounce_ms: int = 300

    @property
    def debounce_seconds(self) -> float:
        return max(0, min(self.debounce_ms, MAX_DEBOUNCE_MS)) / 1000.0


class RecordsConfig(BaseModel):
    """Remote record store consumed by the save/fetch collaborators."""
    base_url: str = ""
    timeout_s: float = 10.0
    entity_kinds: List[str] = DEFAULT_ENTITY_KINDS.split(",")


class DraftTrayConfig(BaseModel):
    storage: StorageConfig = StorageConfig()
    editor: EditorConfig = EditorConfig()
    records: RecordsConfig = RecordsConfig()
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False

    @classmethod
    def from_env(cls) -> "DraftTrayConfig":
        entity_kinds = [
            kind.strip().lower()
            for kind in _env("DRAFTTRAY_ENTITY_KINDS", DEFAULT_ENTITY_KINDS).split(",")
            if kind.strip()
        ]
        return cls(
            storage=StorageConfig(
                mode=_env("DRAFTTRAY_STORE", "inmem").strip().lower(),
                sqlite_path=_env("DRAFTTRAY_SQLITE_PATH", "./drafttray_state.db"),
                sqlite_busy_timeout_ms=max(0, _env_int("DRAFTTRAY_SQLITE_BUSY_TIMEOUT_MS", 5000)),
                json_path=_env("DRAFTTRAY_JSON_PATH", "./drafttray_state.json"),
                key_namespace=_env("DRAFTTRAY_KEY_NAMESPACE", "drafttray").strip() or "drafttray",
            ),
            editor=EditorConfig(
                debounce_ms=max(0, min(_env_int("DRAFTTRAY_DEBOUNCE_MS", 300), MAX_DEBOUNCE_MS)),
            ),
            records=RecordsConfig(
                base_url=_env("DRAFTTRAY_RECORDS_BASE_URL", "").strip().rstrip("/"),
                timeout_s=max(0.1, _env_float("DRAFTTRAY_RECORDS_TIMEOUT_S", 10.0)),
                entity_kinds=entity_kinds,
            ),
            api_host=_env("DRAFTTRAY_API_HOST", "0.0.0.0"),
            api_port=_env_int("DRAFTTRAY_API_PORT", 8000),
            debug=_env_bool("DRAFTTRAY_DEBUG", False),
        )


config = DraftTrayConfig.from_env()
