from __future__ import annotations

import copy
import inspect
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Literal, Optional

from drafttray.core.collaborators import SaveCollaborator, UploadedFile
from drafttray.core.drafts import DraftRecord, DraftStore
from drafttray.core.registry import ModalInstance, ModalRegistry

logger = logging.getLogger(__name__)

SeedSource = Literal["draft", "snapshot", "empty"]
SubmitStatus = Literal["saved", "failed", "busy"]


@dataclass
class SubmitResult:
    status: SubmitStatus
    entity: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "saved"


def _entity_id_from(data: Dict[str, Any]) -> Optional[str]:
    for key in ("_id", "id"):
        value = data.get(key)
        if value not in (None, ""):
            return str(value)
    return None


class FormHost:
    """Live edit buffer for one modal instance.

    Buffer changes are written through to the draft store, debounced by at most
    ``debounce_seconds``. Terminal outcomes (save success, cancel) are reported
    to the registry. Outcome handling only touches the stores, so a save that
    completes after the host was unmounted is still applied.
    """

    def __init__(
        self,
        instance: ModalInstance,
        *,
        registry: ModalRegistry,
        draft_store: DraftStore,
        save: SaveCollaborator,
        empty_record: Optional[Callable[[], Dict[str, Any]]] = None,
        debounce_seconds: float = 0.0,
        on_closed: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.instance_id = instance.id
        self.entity_kind = instance.entity_kind
        self.is_edit = instance.is_edit
        self.entity_id = instance.entity_id
        self.registry = registry
        self.draft_store = draft_store
        self.save_collaborator = save
        self.empty_record = empty_record or dict
        self.debounce_seconds = max(0.0, min(float(debounce_seconds), 1.0))
        self.on_closed = on_closed

        self.mounted = True
        self.submitting = False
        self.last_error: Optional[str] = None
        self._cancelled = False
        self._pending = False
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.RLock()
        self._draft_saved_entity_id: Optional[str] = None

        self.buffer, self.seed_source = self._seed(instance)

    def _seed(self, instance: ModalInstance) -> tuple[Dict[str, Any], SeedSource]:
        record = self.draft_store.load(instance.id)
        if record is not None:
            self._draft_saved_entity_id = record.saved_entity_id
            return copy.deepcopy(record.data), "draft"
        if instance.is_edit and instance.entity_ref is not None and instance.entity_ref.snapshot is not None:
            return copy.deepcopy(instance.entity_ref.snapshot), "snapshot"
        return dict(self.empty_record()), "empty"

    @property
    def dirty(self) -> bool:
        return self._pending

    def saved_entity_id(self) -> Optional[str]:
        if self.is_edit and self.entity_id:
            return self.entity_id
        return _entity_id_from(self.buffer) or self._draft_saved_entity_id

    def set_field(self, name: str, value: Any) -> None:
        self.update({name: value})

    def update(self, patch: Dict[str, Any]) -> None:
        with self._lock:
            self.buffer.update(copy.deepcopy(patch))
            self._changed()

    def replace(self, buffer: Dict[str, Any]) -> None:
        with self._lock:
            self.buffer = copy.deepcopy(buffer)
            self._changed()

    def _changed(self) -> None:
        self._pending = True
        if self.debounce_seconds <= 0:
            self.flush()
            return
        if self._timer is None:
            timer = threading.Timer(self.debounce_seconds, self.flush)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _write_draft(self) -> bool:
        record = DraftRecord(
            modal_id=self.instance_id,
            entity_kind=self.entity_kind,
            is_edit=self.is_edit,
            data=copy.deepcopy(self.buffer),
            saved_entity_id=self.saved_entity_id(),
        )
        return self.draft_store.save(self.instance_id, record)

    def flush(self) -> bool:
        """Persist a pending buffer change now. Returns False only when a write failed."""
        with self._lock:
            self._cancel_timer()
            if not self._pending or self._cancelled:
                return True
            self._pending = False
            return self._write_draft()

    def minimize(self) -> bool:
        self.flush()
        changed = self.registry.minimize(self.instance_id)
        self.mounted = False
        return changed

    def unmount(self) -> None:
        self.flush()
        self.mounted = False

    def remount(self) -> None:
        """Reattach a host that was detached while a save was still in flight."""
        self.mounted = True

    def clear_draft(self) -> None:
        with self._lock:
            self._cancel_timer()
            self._pending = False
            self.buffer = dict(self.empty_record())
            self._draft_saved_entity_id = None
            self.draft_store.delete(self.instance_id)

    def cancel(self) -> None:
        with self._lock:
            record = self.draft_store.load(self.instance_id)
            saved_id = record.saved_entity_id if record is not None else self.saved_entity_id()
            if saved_id:
                self.flush()
            else:
                self._cancel_timer()
                self._pending = False
                self.draft_store.delete(self.instance_id)
            self._cancelled = True
        self._retire()

    def _retire(self) -> None:
        self.registry.close(self.instance_id)
        self.mounted = False
        if self.on_closed is not None:
            self.on_closed(self.instance_id)

    async def submit(self, file: Optional[UploadedFile] = None, credential: Optional[str] = None) -> SubmitResult:
        if self.submitting:
            return SubmitResult(status="busy", error="A save is already in progress for this form")

        self.submitting = True
        self.flush()
        with self._lock:
            payload = copy.deepcopy(self.buffer)
        try:
            try:
                outcome = self.save_collaborator(self.entity_id, payload, file, credential)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
            except Exception as exc:
                return self._handle_failure(exc)
            return self._handle_success(outcome)
        finally:
            self.submitting = False

    def _handle_success(self, entity: Any) -> SubmitResult:
        entity = dict(entity) if isinstance(entity, dict) else {}
        with self._lock:
            self._cancel_timer()
            self._pending = False
        self.draft_store.delete(self.instance_id)
        self.last_error = None
        logger.info(
            "Saved %s (modal_id=%s entity_id=%s mounted=%s)",
            self.entity_kind,
            self.instance_id,
            _entity_id_from(entity) or self.entity_id,
            self.mounted,
        )
        self._retire()
        return SubmitResult(status="saved", entity=entity)

    def _handle_failure(self, exc: Exception) -> SubmitResult:
        message = str(exc).strip() or "Save failed"
        self.last_error = message
        logger.warning("Save failed for %s (modal_id=%s): %s", self.entity_kind, self.instance_id, message)
        return SubmitResult(status="failed", error=message)
