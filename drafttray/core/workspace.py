from __future__ import annotations

import inspect
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from drafttray.core.collaborators import FetchCollaborator, HttpRecordClient, SaveCollaborator
from drafttray.core.config import DraftTrayConfig
from drafttray.core.drafts import DraftStore
from drafttray.core.form_host import FormHost
from drafttray.core.registry import ModalRegistry
from drafttray.core.stores import KeyValueStore, create_kv_store
from drafttray.core.tray import TITLE_FIELDS, TrayController

logger = logging.getLogger(__name__)


class UnknownEntityKindError(KeyError):
    pass


@dataclass
class EntityBinding:
    """What one admin page contributes: its collaborators and form defaults."""

    entity_kind: str
    save: SaveCollaborator
    fetch: Optional[FetchCollaborator] = None
    empty_record: Optional[Callable[[], Dict[str, Any]]] = None
    title_fields: tuple[str, ...] = TITLE_FIELDS


class DraftWorkspace:
    def __init__(
        self,
        kv_store: KeyValueStore,
        *,
        namespace: str = "drafttray",
        debounce_seconds: float = 0.0,
    ) -> None:
        self.kv_store = kv_store
        self.namespace = namespace
        self.debounce_seconds = debounce_seconds
        self.bindings: Dict[str, EntityBinding] = {}
        self._hosts: Dict[str, FormHost] = {}
        self._lock = threading.Lock()
        self.draft_store = DraftStore(kv_store, namespace=namespace)
        self.registry = ModalRegistry(kv_store, namespace=namespace)
        self._park_orphaned_instances()

    def _park_orphaned_instances(self) -> None:
        # Persisted instances have no live form host yet; they come back minimized.
        parked = self.registry.minimize_open()
        if parked:
            logger.info("Parked %s open modal instance(s) in the tray", len(parked))

    @classmethod
    def from_config(cls, config: DraftTrayConfig, kv_store: Optional[KeyValueStore] = None) -> "DraftWorkspace":
        return cls(
            kv_store if kv_store is not None else create_kv_store(config),
            namespace=config.storage.key_namespace,
            debounce_seconds=config.editor.debounce_seconds,
        )

    def register(self, binding: EntityBinding) -> None:
        self.bindings[binding.entity_kind] = binding

    def register_http_bindings(self, config: DraftTrayConfig) -> None:
        for entity_kind in config.records.entity_kinds:
            client = HttpRecordClient(config.records.base_url, entity_kind, timeout_s=config.records.timeout_s)
            self.register(EntityBinding(entity_kind=entity_kind, save=client.save, fetch=client.fetch))

    def binding(self, entity_kind: str) -> EntityBinding:
        binding = self.bindings.get(entity_kind)
        if binding is None:
            raise UnknownEntityKindError(entity_kind)
        return binding

    def open_create(self, entity_kind: str) -> str:
        self.binding(entity_kind)
        return self.registry.open_create(entity_kind)

    async def open_edit(
        self,
        entity_kind: str,
        entity_id: str,
        snapshot: Optional[Dict[str, Any]] = None,
        credential: Optional[str] = None,
    ) -> str:
        binding = self.binding(entity_kind)
        if snapshot is None and binding.fetch is not None:
            fetched = binding.fetch(entity_id, credential)
            if inspect.isawaitable(fetched):
                fetched = await fetched
            snapshot = dict(fetched) if isinstance(fetched, dict) else None
        return self.registry.open_edit(entity_kind, entity_id, snapshot)

    def mount(self, instance_id: str) -> Optional[FormHost]:
        with self._lock:
            host = self._hosts.get(instance_id)
            if host is not None and host.mounted:
                return host
            instance = self.registry.get(instance_id)
            if instance is None:
                return None
            if host is not None and host.submitting:
                # One host per instance while its save is pending.
                if instance.minimized:
                    self.registry.restore(instance_id)
                host.remount()
                return host
            binding = self.binding(instance.entity_kind)
            if instance.minimized:
                self.registry.restore(instance_id)
            host = FormHost(
                instance,
                registry=self.registry,
                draft_store=self.draft_store,
                save=binding.save,
                empty_record=binding.empty_record,
                debounce_seconds=self.debounce_seconds,
                on_closed=self._forget,
            )
            self._hosts[instance_id] = host
            return host

    def host(self, instance_id: str) -> Optional[FormHost]:
        with self._lock:
            host = self._hosts.get(instance_id)
            return host if host is not None and host.mounted else None

    def _forget(self, instance_id: str) -> None:
        with self._lock:
            self._hosts.pop(instance_id, None)

    def _detach(self, instance_id: str) -> Optional[FormHost]:
        with self._lock:
            host = self._hosts.get(instance_id)
            if host is not None and not host.submitting:
                del self._hosts[instance_id]
            return host

    def unmount(self, instance_id: str) -> None:
        host = self._detach(instance_id)
        if host is not None:
            host.unmount()

    def minimize(self, instance_id: str) -> bool:
        host = self.host(instance_id)
        if host is not None:
            self._detach(instance_id)
            return host.minimize()
        return self.registry.minimize(instance_id)

    def close(self, instance_id: str) -> bool:
        self.unmount(instance_id)
        return self.registry.close(instance_id)

    def tray(self, entity_kind: Optional[str] = None) -> TrayController:
        title_fields = {kind: binding.title_fields for kind, binding in self.bindings.items()}
        return TrayController(self.registry, self.draft_store, entity_kind=entity_kind, title_fields=title_fields)

    def flush_all(self) -> None:
        with self._lock:
            hosts = list(self._hosts.values())
        for host in hosts:
            host.flush()

    def reload(self) -> None:
        """Drop every in-memory view and rebuild from persisted state only."""
        with self._lock:
            self._hosts = {}
            self.draft_store = DraftStore(self.kv_store, namespace=self.namespace)
            self.registry = ModalRegistry(self.kv_store, namespace=self.namespace)
            self._park_orphaned_instances()
        logger.info("Workspace reloaded (namespace=%s instances=%s)", self.namespace, len(self.registry.list()))
