from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from drafttray.core.stores import KeyValueStore, storage_json_dumps, storage_json_loads

logger = logging.getLogger(__name__)

DRAFT_KEY_INFIX = "-draft-"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DraftRecord(BaseModel):
    """Locally persisted copy of one modal's in-progress field values."""

    modal_id: str = Field(min_length=1)
    entity_kind: str = ""
    is_edit: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)
    saved_entity_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(extra="ignore")

    @property
    def has_saved_entity(self) -> bool:
        return bool(self.saved_entity_id)


class DraftStore:
    """Draft persistence over a KeyValueStore.

    Writes are immediate. Persistence failures are logged and reported through
    the return value of ``save``; ``load``/``list_all`` never raise and treat
    malformed entries as absent.
    """

    def __init__(self, kv_store: KeyValueStore, *, namespace: str = "drafttray") -> None:
        self.kv_store = kv_store
        self.namespace = namespace
        self._lock = threading.Lock()
        self._last_stamp: Dict[str, datetime] = {}

    @property
    def key_prefix(self) -> str:
        return f"{self.namespace}{DRAFT_KEY_INFIX}"

    def key_for(self, modal_id: str) -> str:
        return f"{self.key_prefix}{modal_id}"

    def _next_stamp(self, modal_id: str) -> datetime:
        now = utc_now()
        previous = self._last_stamp.get(modal_id)
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        return now

    def save(self, modal_id: str, record: DraftRecord) -> bool:
        with self._lock:
            stamp = self._next_stamp(modal_id)
            try:
                stored = record.model_copy(update={"modal_id": modal_id, "updated_at": stamp})
                payload = storage_json_dumps(stored.model_dump(mode="json"))
                self.kv_store.set_item(self.key_for(modal_id), payload)
            except Exception as exc:
                logger.warning("Draft persistence failed (modal_id=%s): %s", modal_id, exc)
                return False
            self._last_stamp[modal_id] = stamp
            return True

    def _read(self, key: str, modal_id: str) -> Optional[DraftRecord]:
        try:
            raw = self.kv_store.get_item(key)
        except Exception as exc:
            logger.warning("Draft read failed (key=%s): %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            record = DraftRecord.model_validate(storage_json_loads(raw))
        except (ValueError, TypeError, ValidationError) as exc:
            logger.warning("Ignoring corrupt draft (key=%s): %s", key, exc)
            return None
        if record.modal_id != modal_id:
            logger.warning("Ignoring draft with mismatched id (key=%s modal_id=%s)", key, record.modal_id)
            return None
        return record

    def load(self, modal_id: str) -> Optional[DraftRecord]:
        return self._read(self.key_for(modal_id), modal_id)

    def delete(self, modal_id: str) -> None:
        with self._lock:
            try:
                self.kv_store.remove_item(self.key_for(modal_id))
            except Exception as exc:
                logger.warning("Draft delete failed (modal_id=%s): %s", modal_id, exc)
            self._last_stamp.pop(modal_id, None)

    def list_all(self, entity_kind: Optional[str] = None, *, prefix: Optional[str] = None) -> list[DraftRecord]:
        """Every readable draft, newest first, optionally scoped by entity kind or modal id prefix."""
        try:
            keys = self.kv_store.keys(self.key_prefix)
        except Exception as exc:
            logger.warning("Draft enumeration failed: %s", exc)
            return []

        records: list[DraftRecord] = []
        for key in keys:
            modal_id = key[len(self.key_prefix):]
            if prefix and not modal_id.startswith(prefix):
                continue
            record = self._read(key, modal_id)
            if record is None:
                continue
            if entity_kind is not None and record.entity_kind != entity_kind:
                continue
            records.append(record)
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records
