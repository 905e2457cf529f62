from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from drafttray.core.drafts import DraftRecord, utc_now
from drafttray.core.stores import KeyValueStore, storage_json_dumps, storage_json_loads

logger = logging.getLogger(__name__)

INSTANCES_KEY_SUFFIX = "-modal-instances"


class InstanceMode(str, Enum):
    CREATE = "create"
    EDIT = "edit"


class EntityRef(BaseModel):
    entity_id: Optional[str] = None
    snapshot: Optional[Dict[str, Any]] = None


class ModalInstance(BaseModel):
    id: str = Field(min_length=1)
    entity_kind: str
    mode: InstanceMode = InstanceMode.CREATE
    minimized: bool = False
    entity_ref: Optional[EntityRef] = None
    opened_at: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(extra="ignore")

    @property
    def is_edit(self) -> bool:
        return self.mode == InstanceMode.EDIT

    @property
    def entity_id(self) -> Optional[str]:
        return self.entity_ref.entity_id if self.entity_ref is not None else None


def _millis() -> int:
    return int(time.time() * 1000)


def new_create_instance_id(entity_kind: str) -> str:
    return f"{entity_kind}-modal-{_millis()}-{uuid.uuid4().hex[:7]}"


def new_edit_instance_id(entity_kind: str, entity_id: str) -> str:
    return f"{entity_kind}-modal-{entity_id}-{_millis()}"


class ModalRegistry:
    """Authority for which modal instances are open, minimized or gone.

    The instance list is mirrored to the key-value store under
    ``<namespace>-modal-instances``; every mutation rewrites the full list
    inside one critical section.
    """

    def __init__(self, kv_store: KeyValueStore, *, namespace: str = "drafttray") -> None:
        self.kv_store = kv_store
        self.namespace = namespace
        self._lock = threading.RLock()
        self._instances: list[ModalInstance] = self._read_persisted()

    @property
    def storage_key(self) -> str:
        return f"{self.namespace}{INSTANCES_KEY_SUFFIX}"

    def _read_persisted(self) -> list[ModalInstance]:
        try:
            raw = self.kv_store.get_item(self.storage_key)
        except Exception as exc:
            logger.warning("Instance list read failed (key=%s): %s", self.storage_key, exc)
            return []
        if raw is None:
            return []
        try:
            items = storage_json_loads(raw)
        except ValueError as exc:
            logger.warning("Ignoring corrupt instance list (key=%s): %s", self.storage_key, exc)
            return []
        if not isinstance(items, list):
            return []

        instances: list[ModalInstance] = []
        seen: set[str] = set()
        for item in items:
            try:
                instance = ModalInstance.model_validate(item)
            except ValidationError as exc:
                logger.warning("Skipping malformed modal instance: %s", exc)
                continue
            if instance.id in seen:
                continue
            seen.add(instance.id)
            instances.append(instance)
        return instances

    def _persist(self) -> None:
        payload = [instance.model_dump(mode="json") for instance in self._instances]
        try:
            self.kv_store.set_item(self.storage_key, storage_json_dumps(payload))
        except Exception as exc:
            logger.warning("Instance list persistence failed (key=%s): %s", self.storage_key, exc)

    def _mutate(self, change: Callable[[list[ModalInstance]], Any]) -> Any:
        with self._lock:
            working = [instance.model_copy(deep=True) for instance in self._instances]
            result = change(working)
            self._instances = working
            self._persist()
            return result

    def _find(self, instances: list[ModalInstance], instance_id: str) -> Optional[ModalInstance]:
        for instance in instances:
            if instance.id == instance_id:
                return instance
        return None

    def _unique_id(self, instances: list[ModalInstance], candidate: str) -> str:
        existing = {instance.id for instance in instances}
        instance_id = candidate
        while instance_id in existing:
            instance_id = f"{candidate}-{uuid.uuid4().hex[:4]}"
        return instance_id

    def open_create(self, entity_kind: str) -> str:
        def change(instances: list[ModalInstance]) -> str:
            instance_id = self._unique_id(instances, new_create_instance_id(entity_kind))
            instances.append(ModalInstance(id=instance_id, entity_kind=entity_kind, mode=InstanceMode.CREATE))
            return instance_id

        instance_id = self._mutate(change)
        logger.info("Opened create modal (entity_kind=%s id=%s)", entity_kind, instance_id)
        return instance_id

    def open_edit(self, entity_kind: str, entity_id: str, snapshot: Optional[Dict[str, Any]] = None) -> str:
        def change(instances: list[ModalInstance]) -> str:
            instance_id = self._unique_id(instances, new_edit_instance_id(entity_kind, entity_id))
            instances.append(
                ModalInstance(
                    id=instance_id,
                    entity_kind=entity_kind,
                    mode=InstanceMode.EDIT,
                    entity_ref=EntityRef(entity_id=entity_id, snapshot=copy.deepcopy(snapshot)),
                )
            )
            return instance_id

        instance_id = self._mutate(change)
        logger.info("Opened edit modal (entity_kind=%s entity_id=%s id=%s)", entity_kind, entity_id, instance_id)
        return instance_id

    def _set_minimized(self, instance_id: str, minimized: bool) -> bool:
        with self._lock:
            current = self._find(self._instances, instance_id)
            if current is None or current.minimized == minimized:
                return False

            def change(instances: list[ModalInstance]) -> bool:
                target = self._find(instances, instance_id)
                if target is None:
                    return False
                target.minimized = minimized
                return True

            return self._mutate(change)

    def minimize(self, instance_id: str) -> bool:
        return self._set_minimized(instance_id, True)

    def restore(self, instance_id: str) -> bool:
        return self._set_minimized(instance_id, False)

    def close(self, instance_id: str) -> bool:
        return bool(self.close_many([instance_id]))

    def close_many(self, instance_ids: Iterable[str]) -> list[str]:
        targets = set(instance_ids)
        with self._lock:
            if not any(instance.id in targets for instance in self._instances):
                return []

            def change(instances: list[ModalInstance]) -> list[str]:
                closed = [instance.id for instance in instances if instance.id in targets]
                instances[:] = [instance for instance in instances if instance.id not in targets]
                return closed

            closed = self._mutate(change)
        if closed:
            logger.info("Closed modal instances: %s", ", ".join(closed))
        return closed

    def restore_all(self, entity_kind: Optional[str] = None) -> list[str]:
        with self._lock:
            if not any(i.minimized and (entity_kind is None or i.entity_kind == entity_kind) for i in self._instances):
                return []

            def change(instances: list[ModalInstance]) -> list[str]:
                restored: list[str] = []
                for instance in instances:
                    if instance.minimized and (entity_kind is None or instance.entity_kind == entity_kind):
                        instance.minimized = False
                        restored.append(instance.id)
                return restored

            return self._mutate(change)

    def minimize_open(self) -> list[str]:
        """Park every open instance in the tray. Used when no live form host
        exists for them, e.g. after rebuilding from persisted state."""
        with self._lock:
            if all(instance.minimized for instance in self._instances):
                return []

            def change(instances: list[ModalInstance]) -> list[str]:
                parked: list[str] = []
                for instance in instances:
                    if not instance.minimized:
                        instance.minimized = True
                        parked.append(instance.id)
                return parked

            return self._mutate(change)

    def reopen_from_draft(self, record: DraftRecord) -> str:
        def change(instances: list[ModalInstance]) -> str:
            existing = self._find(instances, record.modal_id)
            if existing is not None:
                existing.minimized = False
                return existing.id
            entity_ref = None
            if record.is_edit:
                entity_ref = EntityRef(entity_id=record.saved_entity_id)
            instances.append(
                ModalInstance(
                    id=record.modal_id,
                    entity_kind=record.entity_kind,
                    mode=InstanceMode.EDIT if record.is_edit else InstanceMode.CREATE,
                    entity_ref=entity_ref,
                )
            )
            return record.modal_id

        instance_id = self._mutate(change)
        logger.info("Reopened draft as modal (entity_kind=%s id=%s)", record.entity_kind, instance_id)
        return instance_id

    def get(self, instance_id: str) -> Optional[ModalInstance]:
        with self._lock:
            instance = self._find(self._instances, instance_id)
            return instance.model_copy(deep=True) if instance is not None else None

    def list(self, entity_kind: Optional[str] = None) -> list[ModalInstance]:
        with self._lock:
            return [
                instance.model_copy(deep=True)
                for instance in self._instances
                if entity_kind is None or instance.entity_kind == entity_kind
            ]
