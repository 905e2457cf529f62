import json

from drafttray.core.drafts import DraftRecord
from drafttray.core.registry import InstanceMode, ModalRegistry
from drafttray.core.stores import InMemoryKeyValueStore


def _persisted(kv: InMemoryKeyValueStore, registry: ModalRegistry) -> list:
    return json.loads(kv.get_item(registry.storage_key))


def _assert_mirror_agrees(kv: InMemoryKeyValueStore, registry: ModalRegistry) -> None:
    persisted = _persisted(kv, registry)
    assert [(i["id"], i["minimized"]) for i in persisted] == [(i.id, i.minimized) for i in registry.list()]


def test_minimize_then_restore_leaves_single_open_instance():
    kv = InMemoryKeyValueStore()
    registry = ModalRegistry(kv)
    instance_id = registry.open_create("stakeholder")

    assert registry.minimize(instance_id) is True
    _assert_mirror_agrees(kv, registry)
    assert registry.restore(instance_id) is True
    _assert_mirror_agrees(kv, registry)

    instances = [i for i in registry.list() if i.id == instance_id]
    assert len(instances) == 1
    assert instances[0].minimized is False
    assert instances[0].mode == InstanceMode.CREATE


def test_toggles_are_noops_when_state_matches_or_id_unknown():
    registry = ModalRegistry(InMemoryKeyValueStore())
    instance_id = registry.open_create("program")

    assert registry.restore(instance_id) is False
    assert registry.minimize("ghost") is False
    assert registry.restore("ghost") is False
    assert registry.close("ghost") is False
    registry.minimize(instance_id)
    assert registry.minimize(instance_id) is False


def test_open_edit_records_entity_ref_and_snapshot():
    registry = ModalRegistry(InMemoryKeyValueStore())
    snapshot = {"_id": "e7", "name": {"en": "Acme"}}
    instance_id = registry.open_edit("stakeholder", "e7", snapshot)
    snapshot["name"]["en"] = "mutated by caller"

    instance = registry.get(instance_id)
    assert instance is not None
    assert instance_id.startswith("stakeholder-modal-e7-")
    assert instance.mode == InstanceMode.EDIT
    assert instance.entity_id == "e7"
    assert instance.entity_ref.snapshot == {"_id": "e7", "name": {"en": "Acme"}}


def test_instance_ids_are_unique_per_registry():
    registry = ModalRegistry(InMemoryKeyValueStore())
    ids = {registry.open_create("team-member") for _ in range(20)}
    ids |= {registry.open_edit("team-member", "t1") for _ in range(5)}

    assert len(ids) == 25
    assert len(registry.list()) == 25


def test_close_removes_instance_and_is_mirrored():
    kv = InMemoryKeyValueStore()
    registry = ModalRegistry(kv)
    keep = registry.open_create("project")
    gone = registry.open_create("project")

    assert registry.close(gone) is True
    assert [i.id for i in registry.list()] == [keep]
    _assert_mirror_agrees(kv, registry)


def test_rapid_minimize_then_close_persists_consistent_snapshot():
    kv = InMemoryKeyValueStore()
    registry = ModalRegistry(kv)
    instance_id = registry.open_create("project")
    registry.minimize(instance_id)
    registry.close(instance_id)

    assert _persisted(kv, registry) == []
    assert ModalRegistry(kv).list() == []


def test_reopen_from_draft_shares_modal_id_and_mode():
    registry = ModalRegistry(InMemoryKeyValueStore())
    record = DraftRecord(
        modal_id="stakeholder-modal-e3-1700000000000",
        entity_kind="stakeholder",
        is_edit=True,
        data={"name": "Acme"},
        saved_entity_id="e3",
    )

    instance_id = registry.reopen_from_draft(record)
    again = registry.reopen_from_draft(record)

    assert instance_id == again == record.modal_id
    instances = registry.list()
    assert len(instances) == 1
    assert instances[0].mode == InstanceMode.EDIT
    assert instances[0].entity_id == "e3"
    assert instances[0].minimized is False


def test_registry_rehydrates_from_persisted_list_and_skips_bad_rows():
    kv = InMemoryKeyValueStore()
    registry = ModalRegistry(kv, namespace="mv")
    first = registry.open_create("mission-vision")
    registry.minimize(first)

    rows = _persisted(kv, registry)
    rows.append({"mode": "create"})
    rows.append(dict(rows[0]))
    kv.set_item(registry.storage_key, json.dumps(rows))

    reloaded = ModalRegistry(kv, namespace="mv")
    instances = reloaded.list()
    assert [i.id for i in instances] == [first]
    assert instances[0].minimized is True


def test_corrupt_instance_list_starts_empty():
    kv = InMemoryKeyValueStore()
    kv.set_item("drafttray-modal-instances", "{oops")
    assert ModalRegistry(kv).list() == []


def test_list_and_restore_all_scope_by_entity_kind():
    registry = ModalRegistry(InMemoryKeyValueStore())
    s1 = registry.open_create("stakeholder")
    p1 = registry.open_create("program")
    registry.minimize(s1)
    registry.minimize(p1)

    assert registry.restore_all("stakeholder") == [s1]
    assert registry.get(p1).minimized is True
    assert [i.id for i in registry.list("program")] == [p1]


def test_minimize_open_parks_only_open_instances():
    kv = InMemoryKeyValueStore()
    registry = ModalRegistry(kv)
    already = registry.open_create("team-member")
    registry.minimize(already)
    open_one = registry.open_create("team-member")

    assert registry.minimize_open() == [open_one]
    assert all(i.minimized for i in ModalRegistry(kv).list())
    assert registry.minimize_open() == []
