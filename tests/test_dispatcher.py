import threading

import pytest

from conftest import RecordingGateway, make_resource
from csr import db
from csr.dispatcher import ControllerConfig, Dispatcher, Registry, ResyncLoop, UnknownKind
from csr.models import CustomServiceSpec
from csr.reconciler import CRD_NAME, FINALIZER_NAME, READY_MESSAGE, CustomServiceReconciler

KIND = "CustomService"


def _setup(generation_aware=False, gateway=None, update_status=True):
    gw = gateway or RecordingGateway()
    rec = CustomServiceReconciler(gw, update_status=update_status)
    registry = Registry()
    registry.register(
        KIND, rec, ControllerConfig(crd_name=CRD_NAME, finalizer=FINALIZER_NAME, generation_aware=generation_aware)
    )
    return Dispatcher(registry), rec, gw


def test_registry_rejects_duplicates_and_unknown_kinds():
    registry = Registry()
    rec = CustomServiceReconciler(RecordingGateway())
    cfg = ControllerConfig(crd_name=CRD_NAME, finalizer=FINALIZER_NAME)
    registry.register(KIND, rec, cfg)

    with pytest.raises(ValueError):
        registry.register(KIND, rec, cfg)
    with pytest.raises(UnknownKind):
        registry.get("Other")
    assert registry.kinds() == [KIND]


def test_dispatch_injects_finalizer_then_upserts_and_persists():
    dispatcher, rec, gw = _setup()
    stored = db.apply_spec(KIND, "default", "svc1", CustomServiceSpec("cm1", "k", "v1"))
    assert stored.metadata.finalizers == []

    result = dispatcher.dispatch(KIND, stored)

    assert result.action == "upserted"
    assert gw.children[("default", "cm1")].data == {"k": "v1"}
    persisted = db.get_resource(KIND, "default", "svc1")
    assert persisted.metadata.finalizers == [FINALIZER_NAME]
    assert persisted.status.child_status == READY_MESSAGE
    assert rec.executions == 1


def test_dispatch_does_not_mutate_caller_snapshot():
    dispatcher, _, _ = _setup()
    stored = db.apply_spec(KIND, "default", "svc1", CustomServiceSpec("cm1", "k", "v1"))

    dispatcher.dispatch(KIND, stored)

    assert stored.metadata.finalizers == []
    assert stored.status is None


def test_failed_upsert_persists_no_status():
    dispatcher, _, gw = _setup(gateway=RecordingGateway(fail_on={"create_or_replace"}))
    db.save_resource(KIND, make_resource())

    with pytest.raises(ConnectionError):
        dispatcher.dispatch(KIND, db.get_resource(KIND, "default", "svc1"))

    assert db.get_resource(KIND, "default", "svc1").status is None
    assert db.latest_events(1)[0]["level"] == "ERROR"


def test_delete_flow_removes_child_and_purges_resource():
    dispatcher, _, gw = _setup()
    dispatcher.dispatch(KIND, db.apply_spec(KIND, "default", "svc1", CustomServiceSpec("cm1", "k", "v1")))

    marked = db.mark_for_deletion(KIND, "default", "svc1")
    result = dispatcher.dispatch(KIND, marked)

    assert result.action == "purged"
    assert gw.children == {}
    assert db.get_resource(KIND, "default", "svc1") is None


def test_delete_keeps_resource_while_foreign_finalizer_remains():
    dispatcher, _, gw = _setup()
    r = make_resource(finalizers=[FINALIZER_NAME, "other.io/finalizer"])
    r.metadata.deletion_timestamp = "2024-01-01T00:00:00Z"
    db.save_resource(KIND, r)

    result = dispatcher.dispatch(KIND, r)

    assert result.action == "deleted"
    assert gw.calls == ["delete"]
    persisted = db.get_resource(KIND, "default", "svc1")
    assert persisted.metadata.finalizers == ["other.io/finalizer"]


def test_delete_without_our_finalizer_skips_cleanup():
    dispatcher, _, gw = _setup()
    r = make_resource(finalizers=[])
    r.metadata.deletion_timestamp = "2024-01-01T00:00:00Z"
    db.save_resource(KIND, r)

    result = dispatcher.dispatch(KIND, r)

    assert result.action == "purged"
    assert gw.calls == []


def test_generation_aware_skips_already_observed_generation():
    dispatcher, rec, _ = _setup(generation_aware=True)
    db.apply_spec(KIND, "default", "svc1", CustomServiceSpec("cm1", "k", "v1"))

    assert dispatcher.dispatch(KIND, db.get_resource(KIND, "default", "svc1")).action == "upserted"
    assert dispatcher.dispatch(KIND, db.get_resource(KIND, "default", "svc1")).action == "skipped"
    assert rec.executions == 1

    changed = db.apply_spec(KIND, "default", "svc1", CustomServiceSpec("cm1", "k", "v2"))
    assert changed.metadata.generation == 2
    assert dispatcher.dispatch(KIND, changed).action == "upserted"
    assert rec.executions == 2


def test_resync_tick_reconciles_all_and_counts_failures():
    dispatcher, rec, gw = _setup()
    db.apply_spec(KIND, "default", "a", CustomServiceSpec("cm-a", "k", "1"))
    db.apply_spec(KIND, "default", "b", CustomServiceSpec("cm-b", "k", "2"))

    loop = ResyncLoop(dispatcher, KIND)
    assert loop.tick() == 0
    assert set(gw.children) == {("default", "cm-a"), ("default", "cm-b")}

    # drift is healed on the next pass
    gw.children[("default", "cm-a")].data = {"k": "tampered", "extra": "x"}
    loop.tick()
    assert gw.children[("default", "cm-a")].data == {"k": "1"}

    gw.fail_on.add("get")
    assert loop.tick() == 2


def test_stale_snapshot_does_not_resurrect_deleted_resource():
    dispatcher, _, gw = _setup()
    dispatcher.dispatch(KIND, db.apply_spec(KIND, "default", "svc1", CustomServiceSpec("cm1", "k", "v1")))
    snapshot = db.list_resources(KIND)[0]

    assert dispatcher.dispatch(KIND, db.mark_for_deletion(KIND, "default", "svc1")).action == "purged"

    result = dispatcher.dispatch(KIND, snapshot)

    assert result.action == "gone"
    assert db.get_resource(KIND, "default", "svc1") is None
    assert gw.children == {}


def test_stale_snapshot_does_not_roll_back_newer_spec():
    dispatcher, _, gw = _setup()
    dispatcher.dispatch(KIND, db.apply_spec(KIND, "default", "svc1", CustomServiceSpec("cm1", "k", "v1")))
    snapshot = db.list_resources(KIND)[0]

    dispatcher.dispatch(KIND, db.apply_spec(KIND, "default", "svc1", CustomServiceSpec("cm1", "k", "v2")))
    result = dispatcher.dispatch(KIND, snapshot)

    assert result.action == "upserted"
    stored = db.get_resource(KIND, "default", "svc1")
    assert stored.spec.value == "v2"
    assert stored.metadata.generation == 2
    assert gw.children[("default", "cm1")].data == {"k": "v2"}


def test_identity_locks_are_released_after_dispatch():
    dispatcher, _, _ = _setup()
    for i in range(5):
        name = f"svc{i}"
        dispatcher.dispatch(KIND, db.apply_spec(KIND, "default", name, CustomServiceSpec(f"cm{i}", "k", "v")))
        dispatcher.dispatch(KIND, db.mark_for_deletion(KIND, "default", name))

    assert dispatcher._identity_locks == {}


def test_identity_lock_released_when_reconcile_fails():
    dispatcher, _, _ = _setup(gateway=RecordingGateway(fail_on={"get"}))
    db.save_resource(KIND, make_resource())

    with pytest.raises(ConnectionError):
        dispatcher.dispatch(KIND, make_resource())

    assert dispatcher._identity_locks == {}


def test_resync_loop_keeps_running_after_failed_tick(monkeypatch):
    dispatcher, _, _ = _setup()
    loop = ResyncLoop(dispatcher, KIND, interval_s=0.01)
    calls = []
    recovered = threading.Event()

    def flaky_tick():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("store locked")
        recovered.set()
        return 0

    monkeypatch.setattr(loop, "tick", flaky_tick)
    loop.start()
    try:
        assert recovered.wait(5)
    finally:
        loop.stop(timeout_s=5)

    assert not loop.is_running()
    assert len(calls) >= 2
    messages = [e["message"] for e in db.latest_events(50)]
    assert any("Resync tick failed: RuntimeError: store locked" in m for m in messages)
