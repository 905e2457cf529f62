import asyncio

import pytest

from drafttray.core.collaborators import SaveError
from drafttray.core.config import DraftTrayConfig, EditorConfig, StorageConfig
from drafttray.core.stores import InMemoryKeyValueStore, JsonFileKeyValueStore
from drafttray.core.workspace import DraftWorkspace, EntityBinding, UnknownEntityKindError


class FakeRecordStore:
    def __init__(self):
        self.entities = {"e7": {"_id": "e7", "name": {"en": "Acme", "per": "", "ps": ""}}}
        self.saved = []

    async def save(self, existing_id, payload, file, credential):
        entity_id = existing_id or f"new-{len(self.saved) + 1}"
        self.saved.append((entity_id, payload))
        self.entities[entity_id] = dict(payload, _id=entity_id)
        return {"id": entity_id, **payload}

    async def fetch(self, entity_id, credential):
        if entity_id not in self.entities:
            raise SaveError("Stakeholder not found", status_code=404)
        return dict(self.entities[entity_id])


def _workspace(kv=None):
    records = FakeRecordStore()
    workspace = DraftWorkspace(kv or InMemoryKeyValueStore())
    for kind in ("stakeholder", "mission-vision"):
        workspace.register(EntityBinding(entity_kind=kind, save=records.save, fetch=records.fetch))
    return workspace, records


def test_typed_create_draft_survives_reload(tmp_path):
    kv = JsonFileKeyValueStore(tmp_path / "state.json")
    workspace, _ = _workspace(kv)
    instance_id = workspace.open_create("stakeholder")
    workspace.mount(instance_id).set_field("name", "Acme")

    reloaded = DraftWorkspace(JsonFileKeyValueStore(tmp_path / "state.json"))
    view = reloaded.tray().view()

    matching = [e for e in view.entries if e.modal_id == instance_id]
    assert len(matching) == 1
    assert matching[0].kind == "minimized"
    assert matching[0].label == "Acme"
    record = reloaded.draft_store.load(instance_id)
    assert record.data["name"] == "Acme"


def test_reload_rebuilds_from_persisted_state_only():
    workspace, _ = _workspace()
    instance_id = workspace.open_create("stakeholder")
    host = workspace.mount(instance_id)
    host.set_field("name", "Acme")
    workspace.minimize(instance_id)

    workspace.reload()

    view = workspace.tray("stakeholder").view()
    assert [i.id for i in view.minimized] == [instance_id]
    assert view.entries[0].label == "Acme"
    assert workspace.host(instance_id) is None


def test_edit_submit_success_removes_draft_and_instance():
    workspace, records = _workspace()
    instance_id = asyncio.run(workspace.open_edit("stakeholder", "e7"))
    host = workspace.mount(instance_id)
    assert host.seed_source == "snapshot"
    host.set_field("website", "https://acme.example")

    result = asyncio.run(host.submit(credential="tok"))

    assert result.ok
    assert records.saved[-1][0] == "e7"
    assert workspace.draft_store.load(instance_id) is None
    assert instance_id not in {i.id for i in workspace.registry.list()}
    assert workspace.host(instance_id) is None


def test_two_concurrent_edits_stay_isolated_when_minimized():
    workspace, records = _workspace()
    records.entities["e8"] = {"_id": "e8", "name": "Beta"}
    first = asyncio.run(workspace.open_edit("stakeholder", "e7"))
    second = asyncio.run(workspace.open_edit("stakeholder", "e8"))

    workspace.mount(first).set_field("name", "Acme v2")
    workspace.mount(second).set_field("name", "Beta v2")
    workspace.minimize(first)
    workspace.minimize(second)

    instances = workspace.registry.list()
    assert len(instances) == 2
    assert all(i.minimized for i in instances)
    assert workspace.draft_store.load(first).data["name"] == "Acme v2"
    assert workspace.draft_store.load(second).data["name"] == "Beta v2"
    assert workspace.draft_store.load(first).saved_entity_id == "e7"
    assert workspace.draft_store.load(second).saved_entity_id == "e8"


def test_open_edit_uses_passed_snapshot_without_fetching():
    workspace, records = _workspace()
    instance_id = asyncio.run(workspace.open_edit("stakeholder", "missing", snapshot={"name": "Inline"}))
    assert workspace.mount(instance_id).buffer == {"name": "Inline"}


def test_failed_prefetch_opens_nothing():
    workspace, _ = _workspace()
    with pytest.raises(SaveError):
        asyncio.run(workspace.open_edit("stakeholder", "missing"))
    assert workspace.registry.list() == []


def test_unknown_entity_kind_is_rejected():
    workspace, _ = _workspace()
    with pytest.raises(UnknownEntityKindError):
        workspace.open_create("unicorn")


def test_restoring_from_tray_mounts_with_draft_contents():
    workspace, _ = _workspace()
    instance_id = workspace.open_create("mission-vision")
    workspace.mount(instance_id).update({"mission": {"en": "Serve"}})
    workspace.close(instance_id)

    orphan = workspace.tray("mission-vision").view().orphaned_drafts[0]
    reopened = workspace.tray("mission-vision").open_orphan(orphan)
    host = workspace.mount(reopened)

    assert reopened == instance_id
    assert host.seed_source == "draft"
    assert host.buffer == {"mission": {"en": "Serve"}}


def test_mount_reuses_live_host_and_restores_minimized_instance():
    workspace, _ = _workspace()
    instance_id = workspace.open_create("stakeholder")
    host = workspace.mount(instance_id)
    assert workspace.mount(instance_id) is host

    workspace.minimize(instance_id)
    remounted = workspace.mount(instance_id)
    assert remounted is not host
    assert workspace.registry.get(instance_id).minimized is False
    assert workspace.mount("ghost") is None


def test_from_config_applies_namespace_and_debounce():
    cfg = DraftTrayConfig(storage=StorageConfig(key_namespace="admin"), editor=EditorConfig(debounce_ms=250))
    workspace = DraftWorkspace.from_config(cfg, InMemoryKeyValueStore())

    assert workspace.namespace == "admin"
    assert workspace.debounce_seconds == 0.25
    assert workspace.registry.storage_key == "admin-modal-instances"


def _slow_workspace():
    release = asyncio.Event()
    calls = []

    async def slow_save(existing_id, payload, file, credential):
        calls.append(existing_id)
        await release.wait()
        return {"id": "s-1", **payload}

    workspace = DraftWorkspace(InMemoryKeyValueStore())
    workspace.register(EntityBinding(entity_kind="stakeholder", save=slow_save))
    return workspace, release, calls


def test_pending_submit_survives_minimize_and_remount_without_duplicate_save():
    async def scenario():
        workspace, release, calls = _slow_workspace()
        instance_id = workspace.open_create("stakeholder")
        host = workspace.mount(instance_id)
        host.set_field("name", "Acme Corp")
        first = asyncio.create_task(host.submit())
        await asyncio.sleep(0)

        assert workspace.minimize(instance_id) is True
        assert workspace.registry.get(instance_id).minimized is True
        remounted = workspace.mount(instance_id)
        second = await remounted.submit()

        release.set()
        return workspace, instance_id, host, remounted, await first, second, calls

    workspace, instance_id, host, remounted, first, second, calls = asyncio.run(scenario())
    assert remounted is host
    assert second.status == "busy"
    assert calls == [None]
    assert first.ok
    assert workspace.registry.get(instance_id) is None
    assert workspace.draft_store.load(instance_id) is None
    assert workspace.host(instance_id) is None


def test_pending_submit_survives_unmount_and_failure_leaves_draft_for_retry():
    async def scenario():
        release = asyncio.Event()
        calls = []

        async def failing_save(existing_id, payload, file, credential):
            calls.append(existing_id)
            await release.wait()
            raise SaveError("Gateway timeout", status_code=504)

        workspace = DraftWorkspace(InMemoryKeyValueStore())
        workspace.register(EntityBinding(entity_kind="stakeholder", save=failing_save))
        instance_id = workspace.open_create("stakeholder")
        host = workspace.mount(instance_id)
        host.set_field("name", "Acme Corp")
        pending = asyncio.create_task(host.submit())
        await asyncio.sleep(0)

        workspace.unmount(instance_id)
        again = workspace.mount(instance_id)
        busy = await again.submit()
        release.set()
        failed = await pending
        return workspace, instance_id, host, again, busy, failed, calls

    workspace, instance_id, host, again, busy, failed, calls = asyncio.run(scenario())
    assert again is host
    assert busy.status == "busy"
    assert failed.status == "failed"
    assert calls == [None]
    assert workspace.draft_store.load(instance_id).data == {"name": "Acme Corp"}
    assert workspace.registry.get(instance_id) is not None
