from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Sequence

from drafttray.core.drafts import DraftRecord, DraftStore
from drafttray.core.registry import ModalInstance, ModalRegistry

logger = logging.getLogger(__name__)

LANGUAGE_PREFERENCE = ("en", "per", "dr", "ps")
TITLE_FIELDS = ("title", "name")
SUMMARY_FIELDS = ("summary", "description")
TITLE_MAX_CHARS = 50
SUMMARY_MAX_CHARS = 100

TrayEntryKind = Literal["minimized", "orphan"]


def _localized_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        for lang in LANGUAGE_PREFERENCE:
            text = value.get(lang)
            if isinstance(text, str) and text.strip():
                return text.strip()
        for text in value.values():
            if isinstance(text, str) and text.strip():
                return text.strip()
    return ""


def _first_text(data: Dict[str, Any], fields: Sequence[str]) -> str:
    for name in fields:
        text = _localized_text(data.get(name))
        if text:
            return text
    return ""


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def draft_summary(record: DraftRecord, title_fields: Sequence[str] = TITLE_FIELDS) -> Dict[str, Any]:
    title = _first_text(record.data, title_fields)
    summary = _first_text(record.data, SUMMARY_FIELDS)
    return {
        "modal_id": record.modal_id,
        "entity_kind": record.entity_kind,
        "title": _truncate(title, TITLE_MAX_CHARS) if title else "",
        "summary": _truncate(summary, SUMMARY_MAX_CHARS) if summary else "",
        "updated_at": record.updated_at,
        "is_edit": record.is_edit,
    }


def tray_label(entity_kind: str, data: Optional[Dict[str, Any]], title_fields: Sequence[str] = TITLE_FIELDS) -> str:
    title = _first_text(data or {}, title_fields)
    if title:
        return _truncate(title, TITLE_MAX_CHARS)
    return f"Draft {entity_kind}"


@dataclass
class TrayEntry:
    kind: TrayEntryKind
    modal_id: str
    entity_kind: str
    label: str
    is_edit: bool
    has_saved_entity: bool
    has_draft: bool
    updated_at: Optional[datetime] = None


@dataclass
class TrayView:
    minimized: list[ModalInstance] = field(default_factory=list)
    orphaned_drafts: list[DraftRecord] = field(default_factory=list)
    entries: list[TrayEntry] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.minimized and not self.orphaned_drafts


class TrayController:
    """Minimized instances plus orphaned drafts, derived from the registry and
    the draft store on every call. Nothing is cached between calls."""

    def __init__(
        self,
        registry: ModalRegistry,
        draft_store: DraftStore,
        *,
        entity_kind: Optional[str] = None,
        title_fields: Optional[Dict[str, Sequence[str]]] = None,
    ) -> None:
        self.registry = registry
        self.draft_store = draft_store
        self.entity_kind = entity_kind
        self.title_fields = title_fields or {}

    def _fields_for(self, entity_kind: str) -> Sequence[str]:
        return self.title_fields.get(entity_kind) or TITLE_FIELDS

    def _drafts(self) -> list[DraftRecord]:
        return self.draft_store.list_all(self.entity_kind)

    def _instances(self) -> list[ModalInstance]:
        return self.registry.list(self.entity_kind)

    def orphaned_drafts(self) -> list[DraftRecord]:
        open_ids = {instance.id for instance in self.registry.list()}
        return [record for record in self._drafts() if record.modal_id not in open_ids]

    def minimized_instances(self) -> list[ModalInstance]:
        return [instance for instance in self._instances() if instance.minimized]

    def view(self) -> TrayView:
        instances = self._instances()
        drafts = {record.modal_id: record for record in self._drafts()}
        all_open_ids = {instance.id for instance in self.registry.list()}

        minimized = [instance for instance in instances if instance.minimized]
        orphans = [record for modal_id, record in drafts.items() if modal_id not in all_open_ids]

        entries: list[TrayEntry] = []
        for instance in minimized:
            record = drafts.get(instance.id)
            if record is not None:
                data: Optional[Dict[str, Any]] = record.data
            elif instance.entity_ref is not None:
                data = instance.entity_ref.snapshot
            else:
                data = None
            entries.append(
                TrayEntry(
                    kind="minimized",
                    modal_id=instance.id,
                    entity_kind=instance.entity_kind,
                    label=tray_label(instance.entity_kind, data, self._fields_for(instance.entity_kind)),
                    is_edit=instance.is_edit,
                    has_saved_entity=bool(record.has_saved_entity) if record is not None else False,
                    has_draft=record is not None,
                    updated_at=record.updated_at if record is not None else None,
                )
            )
        for record in orphans:
            entries.append(
                TrayEntry(
                    kind="orphan",
                    modal_id=record.modal_id,
                    entity_kind=record.entity_kind,
                    label=tray_label(record.entity_kind, record.data, self._fields_for(record.entity_kind)),
                    is_edit=record.is_edit,
                    has_saved_entity=record.has_saved_entity,
                    has_draft=True,
                    updated_at=record.updated_at,
                )
            )
        return TrayView(minimized=minimized, orphaned_drafts=orphans, entries=entries)

    def restore_all(self) -> list[str]:
        return self.registry.restore_all(self.entity_kind)

    def clear_unsaved(self) -> list[str]:
        """Drop minimized/orphaned drafts with no server id; drafts linked to a
        saved entity survive. Returns the affected modal ids."""
        view = self.view()
        drafts = {record.modal_id: record for record in self._drafts()}

        unsaved: set[str] = {record.modal_id for record in view.orphaned_drafts if not record.has_saved_entity}
        to_close: list[str] = []
        for instance in view.minimized:
            record = drafts.get(instance.id)
            if record is None:
                to_close.append(instance.id)
            elif not record.has_saved_entity:
                unsaved.add(instance.id)
                to_close.append(instance.id)

        for modal_id in unsaved:
            self.draft_store.delete(modal_id)
        self.registry.close_many(to_close)

        affected = sorted(unsaved | set(to_close))
        logger.info("Cleared unsaved drafts (entity_kind=%s count=%s)", self.entity_kind or "*", len(affected))
        return affected

    def clear_all(self) -> list[str]:
        """Delete every draft in scope and close every minimized or draft-backed
        instance in scope. Callers confirm with the operator first."""
        drafts = self._drafts()
        draft_ids = {record.modal_id for record in drafts}
        for modal_id in draft_ids:
            self.draft_store.delete(modal_id)

        to_close = [
            instance.id for instance in self._instances() if instance.minimized or instance.id in draft_ids
        ]
        self.registry.close_many(to_close)

        affected = sorted(draft_ids | set(to_close))
        logger.info("Cleared all drafts (entity_kind=%s count=%s)", self.entity_kind or "*", len(affected))
        return affected

    def open_orphan(self, record: DraftRecord) -> str:
        return self.registry.reopen_from_draft(record)

    def open_orphan_by_id(self, modal_id: str) -> Optional[str]:
        record = self.draft_store.load(modal_id)
        if record is None:
            return None
        if self.entity_kind is not None and record.entity_kind != self.entity_kind:
            return None
        return self.open_orphan(record)

    def discard_draft(self, modal_id: str) -> bool:
        record = self.draft_store.load(modal_id)
        instance = self.registry.get(modal_id)
        if record is None and instance is None:
            return False
        self.draft_store.delete(modal_id)
        if instance is not None:
            self.registry.close(modal_id)
        return True
