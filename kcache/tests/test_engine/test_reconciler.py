import os
import time
from unittest import mock

import pytest

from kcache.cancel import CancelToken
from kcache.cluster import ApiError, CacheDeclaration, InMemoryClusterState
from kcache.config import AgentConfig
from kcache.constants import CLUSTER_SCOPED_SUBDIR, LABEL_HOSTNAME
from kcache.database import CacheKey
from kcache.engine import (
    ClusterScope,
    DeclarationPhase,
    InvariantError,
    NamespaceScope,
    NodeReconciler,
    RecordPhase,
)
from kcache.engine.reconciler import _PassState, record_phase, status_of
from kcache.extract import ExtractionCancelled
from kcache.gpu import STUB_GROUPS
from kcache.status import (
    CacheCounts,
    CacheStatus,
    Condition,
    EventReason,
    NodeStatus,
    finalizer_name,
    StatusRecord,
)

NODE = "worker-1"
IMAGE = "quay.io/example/yellow-kernel:latest"
D1 = "sha256:1111"
D2 = "sha256:2222"

CONFIG = AgentConfig(
    node_name=NODE,
    no_gpu=True,
    retry_failure=5.0,
    retry_status_update=1.0,
    usage_poll=30.0,
)


@pytest.fixture
def state():
    return InMemoryClusterState()


def create_reconciler(state, database, scope_cls=ClusterScope, **config):
    cfg = AgentConfig(**{**vars(CONFIG), **config})
    return NodeReconciler(scope_cls(state, NODE), database, cfg)


def declare(state, name="yellow", namespace="", digest=D1, image=IMAGE):
    state.apply_declaration(CacheDeclaration(name, namespace, image, digest))


def get_record(state, namespace=""):
    (record,) = state.list_status_records(namespace, {LABEL_HOSTNAME: NODE})
    return record


def settle(reconciler, max_passes=30):
    for _ in range(max_passes):
        result = reconciler.reconcile()

        if not result.mutated:
            return result

    raise AssertionError("reconciler did not settle")


def events(state, reason):
    return [e for e in state.events if e.reason == reason]


def test_record_phase():
    assert record_phase(None) == RecordPhase.MISSING
    assert record_phase(StatusRecord("r")) == RecordPhase.CREATED


def test_nothing_declared(state, database):
    reconciler = create_reconciler(state, database)

    result = reconciler.reconcile()

    assert result.requeue_after is None
    assert not result.mutated
    assert state.all_status_records() == []


def test_scenario_a_extract_in_steps(state, database):
    declare(state)
    reconciler = create_reconciler(state, database)

    # Record is created without status
    result = reconciler.reconcile()

    assert result.mutated
    assert result.requeue_after == CONFIG.retry_status_update

    record = get_record(state)
    assert record.status is None
    assert record.labels == {LABEL_HOSTNAME: NODE}
    assert record.name.startswith(f"{NODE}-")

    # GPU inventory is populated once
    assert reconciler.reconcile().mutated

    record = get_record(state)
    assert record.status.node_name == NODE
    assert record.status.gpu_inventory == list(STUB_GROUPS)
    assert record.status.cache_statuses == {}
    assert len(events(state, EventReason.CREATED)) == 1

    # Finalizer goes in before anything is extracted
    assert reconciler.reconcile().mutated

    assert get_record(state).finalizers == [finalizer_name("yellow")]
    assert database.list_extracted() == {}

    # Extraction
    assert reconciler.reconcile().mutated

    entry = get_record(state).status.get_entry("yellow", D1)

    assert entry.condition == Condition.EXTRACTED
    assert entry.compatible_ids == [0]
    assert entry.incompatible_ids == [1, 2]
    assert entry.volume_size > 0
    assert entry.active_mounts == []

    assert list(database.list_extracted()) == [CacheKey("", "yellow", D1)]

    # Counts follow
    result = settle(reconciler)

    assert result.requeue_after == CONFIG.usage_poll
    assert not result.errors
    assert get_record(state).status.counts == CacheCounts(nodes=1, extracted=1)


def test_inventory_not_refreshed(state, database):
    declare(state)

    detector = mock.Mock(return_value=list(STUB_GROUPS))
    reconciler = NodeReconciler(
        ClusterScope(state, NODE), database, CONFIG, gpu_detector=detector
    )

    settle(reconciler)
    settle(reconciler)

    assert detector.call_count == 1


def test_awaiting_digest(state, database):
    declare(state, digest=None)
    reconciler = create_reconciler(state, database)

    result = settle(reconciler)

    assert result.requeue_after == CONFIG.usage_poll
    assert database.list_extracted() == {}
    assert get_record(state).finalizers == []
    assert get_record(state).status.cache_statuses == {}


def test_one_mutation_per_pass(state, database):
    declare(state, "yellow")
    declare(state, "green")
    reconciler = create_reconciler(state, database)

    writes = []

    def recording(method):
        def wrapper(*args, **kwargs):
            writes.append(method.__name__)
            return method(*args, **kwargs)

        return wrapper

    for name in ("create_status_record", "update_status_record", "update_status"):
        setattr(state, name, recording(getattr(state, name)))

    for _ in range(20):
        writes.clear()
        result = reconciler.reconcile()

        assert len(writes) == (1 if result.mutated else 0)

        if not result.mutated:
            break

    assert not result.mutated
    assert len(database.list_extracted()) == 2


def test_extraction_failure_not_retried(state, database):
    declare(state, image="quay.io/example/broken:v1")
    reconciler = create_reconciler(state, database)

    result = settle(reconciler)

    entry = get_record(state).status.get_entry("yellow", D1)

    assert entry.condition == Condition.ERROR
    assert "broken" in entry.message
    assert database.list_extracted() == {}
    assert get_record(state).status.counts.errors == 1
    assert result.requeue_after == CONFIG.usage_poll

    with mock.patch.object(database, "extract") as extract:
        settle(reconciler)

    assert not extract.called


def test_new_digest_clears_error(state, database):
    declare(state, image="quay.io/example/broken:v1")
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    declare(state, digest=D2)
    settle(reconciler)

    status = get_record(state).status

    assert status.get_entry("yellow", D2).condition == Condition.EXTRACTED
    assert status.get_entry("yellow", D1) is None
    assert status.counts == CacheCounts(nodes=1, extracted=1)


def test_new_failed_digest_replaces_error(state, database):
    declare(state, image="quay.io/example/broken:v1")
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    declare(state, digest=D2, image="quay.io/example/broken:v2")
    settle(reconciler)

    status = get_record(state).status

    assert list(status.cache_statuses["yellow"]) == [D2]
    assert status.get_entry("yellow", D2).condition == Condition.ERROR
    assert status.counts.errors == 1


def test_delete_after_error_and_new_digest(state, database):
    declare(state, image="quay.io/example/broken:v1")
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    declare(state, digest=D2)
    settle(reconciler)

    state.delete_declaration("", "yellow")
    result = settle(reconciler)

    assert result.requeue_after is None
    assert state.list_declarations(True) == []
    assert get_record(state).finalizers == []
    assert get_record(state).status.cache_statuses == {}
    assert database.list_extracted() == {}


def test_leftover_error_does_not_block_deletion(state, database):
    declare(state, digest=D2)
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    # Failed entry of an older digest that was never cleaned up
    record = get_record(state)
    record.status.set_entry("yellow", D1, CacheStatus(Condition.ERROR, "pull failed"))
    state.update_status(record)

    state.delete_declaration("", "yellow")

    # Removed from disk along with every entry of the cache
    assert reconciler.reconcile().mutated
    assert get_record(state).status.cache_statuses == {}

    settle(reconciler)

    assert state.list_declarations(True) == []


def test_declared_error_kept_while_stranded_digest_removed(state, database):
    declare(state, digest=D1)
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    declare(state, digest=D2, image="quay.io/example/broken:v2")
    settle(reconciler)

    status = get_record(state).status

    # Superseded digest on disk is cleaned up, the failure of the new one stays
    assert database.list_extracted() == {}
    assert list(status.cache_statuses["yellow"]) == [D2]
    assert status.get_entry("yellow", D2).condition == Condition.ERROR

    with mock.patch.object(database, "extract") as extract:
        settle(reconciler)

    assert not extract.called


def test_extraction_cancelled(state, database):
    declare(state)
    reconciler = create_reconciler(state, database)

    for _ in range(3):
        reconciler.reconcile()

    cancel = CancelToken()

    def extract(image, target_dir, token):
        cancel.cancel()
        raise ExtractionCancelled("cancelled")

    with mock.patch.object(database, "_extractor") as extractor:
        extractor.extract.side_effect = extract

        result = reconciler.reconcile(cancel)

    assert not result.mutated
    assert result.requeue_after == CONFIG.retry_failure

    assert database.list_extracted() == {}
    assert get_record(state).status.get_entry("yellow", D1) is None

    # Work resumes on the next pass
    settle(reconciler)

    assert get_record(state).status.get_entry("yellow", D1).condition == (
        Condition.EXTRACTED
    )


def test_extraction_timeout_is_error(state, database):
    declare(state)
    reconciler = create_reconciler(state, database, extract_timeout=0.05)

    def extract(image, target_dir, token):
        while not token.cancelled:
            time.sleep(0.01)

        raise ExtractionCancelled("deadline exceeded")

    with mock.patch.object(database, "_extractor") as extractor:
        extractor.extract.side_effect = extract

        settle(reconciler)

    entry = get_record(state).status.get_entry("yellow", D1)

    assert entry.condition == Condition.ERROR
    assert "timed out" in entry.message
    assert database.list_extracted() == {}


def test_cancelled_before_pass(state, database):
    declare(state)
    reconciler = create_reconciler(state, database)

    cancel = CancelToken()
    cancel.cancel()

    result = reconciler.reconcile(cancel)

    assert not result.mutated
    assert result.requeue_after == CONFIG.retry_failure
    assert state.all_status_records() == []


def test_mount_usage_reported(state, database, usage):
    declare(state)
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    usage.add_usage("", "yellow", D1, "vol-1", 100)
    usage.add_usage("", "yellow", D1, "vol-2", 100)

    settle(reconciler)

    status = get_record(state).status
    entry = status.get_entry("yellow", D1)

    assert entry.condition == Condition.RUNNING
    assert entry.active_mounts == ["vol-1", "vol-2"]
    assert status.counts == CacheCounts(nodes=1, in_use=1, running_mounts=2)

    used = events(state, EventReason.CACHE_USED)
    assert [e.message for e in used] == [
        'cache "yellow" used by "vol-1", use count 1',
        'cache "yellow" used by "vol-2", use count 2',
    ]

    usage.delete_usage("vol-1")
    usage.delete_usage("vol-2")

    settle(reconciler)

    status = get_record(state).status

    assert status.get_entry("yellow", D1).condition == Condition.EXTRACTED
    assert status.counts == CacheCounts(nodes=1, extracted=1)
    assert len(events(state, EventReason.CACHE_RELEASED)) == 2


def test_scenario_b_deletion_blocked_by_mount(state, database, usage):
    declare(state)
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    usage.add_usage("", "yellow", D1, "vol-1", 100)
    settle(reconciler)

    state.delete_declaration("", "yellow")
    assert state.get_declaration("", "yellow").deleting

    assert database.remove("", "yellow", D1)

    result = settle(reconciler)

    assert result.requeue_after == CONFIG.usage_poll

    record = get_record(state)

    assert record.status.get_entry("yellow", D1).condition == Condition.RUNNING
    assert record.finalizers == [finalizer_name("yellow")]
    assert record.status.counts.in_use == 1
    assert CacheKey("", "yellow", D1) in database.list_extracted()

    # Reported once, not on every pass
    settle(reconciler)

    (deleting,) = events(state, EventReason.DELETING)
    assert deleting.warning


def test_scenario_c_cleanup_after_release(state, database, usage):
    declare(state)
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    usage.add_usage("", "yellow", D1, "vol-1", 100)
    settle(reconciler)

    state.delete_declaration("", "yellow")
    settle(reconciler)

    usage.delete_usage("vol-1")

    # Cache leaves the disk and the status record in one step
    assert reconciler.reconcile().mutated

    record = get_record(state)
    assert database.list_extracted() == {}
    assert record.status.cache_statuses == {}
    assert record.status.counts == CacheCounts()
    assert record.finalizers == [finalizer_name("yellow")]

    # Finalizer is removed next, which lets the declaration go
    assert reconciler.reconcile().mutated

    assert get_record(state).finalizers == []
    assert state.list_declarations(True) == []

    result = reconciler.reconcile()

    assert not result.mutated
    assert result.requeue_after is None
    assert not os.path.exists(os.path.join(database.root, CLUSTER_SCOPED_SUBDIR))


def test_superseded_digest_outdated_then_removed(state, database, usage):
    declare(state, digest=D1)
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    usage.add_usage("", "yellow", D1, "vol-1", 100)
    settle(reconciler)

    declare(state, digest=D2)
    settle(reconciler)

    status = get_record(state).status

    assert status.get_entry("yellow", D2).condition == Condition.EXTRACTED
    assert status.get_entry("yellow", D1).condition == Condition.OUTDATED
    assert status.get_entry("yellow", D1).active_mounts == ["vol-1"]
    assert status.counts == CacheCounts(nodes=1, extracted=1, outdated_mounts=1)

    assert set(database.list_extracted()) == {
        CacheKey("", "yellow", D1),
        CacheKey("", "yellow", D2),
    }

    # Stranded cache is removed once it is released
    usage.delete_usage("vol-1")
    result = settle(reconciler)

    record = get_record(state)

    assert list(database.list_extracted()) == [CacheKey("", "yellow", D2)]
    assert record.status.get_entry("yellow", D1) is None
    assert record.status.get_entry("yellow", D2) is not None
    assert record.status.counts == CacheCounts(nodes=1, extracted=1)
    assert record.finalizers == [finalizer_name("yellow")]
    assert result.requeue_after == CONFIG.usage_poll

    data = database.get_cache_file("", "yellow")
    assert set(data.sizes) == {D2}


def test_stranded_cache_without_record_removed(state, database):
    database.extract("", "orphan", IMAGE, D1)
    reconciler = create_reconciler(state, database)

    result = reconciler.reconcile()

    assert not result.mutated
    assert result.requeue_after is None
    assert database.list_extracted() == {}
    assert state.all_status_records() == []


def test_stranded_cache_in_use_without_record_kept(state, database, usage):
    database.extract("", "orphan", IMAGE, D1)
    usage.add_usage("", "orphan", D1, "vol-1", 100)
    reconciler = create_reconciler(state, database)

    result = reconciler.reconcile()

    assert not result.mutated
    assert result.requeue_after == CONFIG.usage_poll
    assert CacheKey("", "orphan", D1) in database.list_extracted()


def test_other_scope_entries_untouched(state, database):
    declare(state, "blue", namespace="team")
    database.extract("", "yellow", IMAGE, D1)

    reconciler = create_reconciler(state, database, NamespaceScope)
    settle(reconciler)

    extracted = database.list_extracted()

    assert CacheKey("", "yellow", D1) in extracted
    assert CacheKey("team", "blue", D1) in extracted
    assert state.list_status_records("", {LABEL_HOSTNAME: NODE}) == []


def test_namespace_scope_record_per_namespace(state, database):
    declare(state, "blue", namespace="team-a")
    declare(state, "green", namespace="team-b")
    declare(state, "yellow")

    reconciler = create_reconciler(state, database, NamespaceScope)
    settle(reconciler)

    a = get_record(state, "team-a")
    b = get_record(state, "team-b")

    assert list(a.status.cache_statuses) == ["blue"]
    assert list(b.status.cache_statuses) == ["green"]
    assert a.finalizers == [finalizer_name("blue")]
    assert a.status.counts == CacheCounts(nodes=1, extracted=1)

    # Cluster-scoped declarations belong to the other reconciler
    assert state.list_status_records("", {LABEL_HOSTNAME: NODE}) == []


def test_missing_status_entry_rebuilt(state, database):
    declare(state)
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    record = get_record(state)
    record.status.cache_statuses.clear()
    state.update_status(record)

    assert reconciler.reconcile().mutated

    entry = get_record(state).status.get_entry("yellow", D1)

    assert entry.condition == Condition.EXTRACTED
    assert entry.compatible_ids == [0]
    assert entry.incompatible_ids == [1, 2]
    assert entry.volume_size > 0


def test_stale_finalizer_swept(state, database):
    declare(state)
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    record = get_record(state)
    record.finalizers.append(finalizer_name("ghost"))
    record.finalizers.append("example.com/foreign")
    state.update_status_record(record)

    assert reconciler.reconcile().mutated

    assert get_record(state).finalizers == [
        finalizer_name("yellow"),
        "example.com/foreign",
    ]


def test_multiple_records_is_error(state, database):
    declare(state)

    for name in ("a", "b"):
        state.create_status_record(StatusRecord(name, labels={LABEL_HOSTNAME: NODE}))

    reconciler = create_reconciler(state, database)
    result = reconciler.reconcile()

    assert not result.mutated
    assert result.requeue_after == CONFIG.retry_failure
    assert isinstance(result.errors[0], ApiError)


def test_api_failure_retried(state, database):
    declare(state)
    reconciler = create_reconciler(state, database)

    with mock.patch.object(state, "list_declarations", side_effect=ApiError("down")):
        result = reconciler.reconcile()

    assert result.requeue_after == CONFIG.retry_failure
    assert not result.mutated


def test_status_update_failure_retried(state, database, caplog):
    declare(state)
    reconciler = create_reconciler(state, database)

    with mock.patch.object(state, "create_status_record", side_effect=ApiError("x")):
        result = reconciler.reconcile()

    assert result.requeue_after == CONFIG.retry_failure
    assert "failed to reconcile <cluster>/yellow" in caplog.text


def test_unload_error(state, database):
    declare(state)
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    state.delete_declaration("", "yellow")

    with mock.patch.object(database, "remove", side_effect=OSError("busy")):
        result = reconciler.reconcile()

        assert result.mutated
        assert result.errors

        entry = get_record(state).status.get_entry("yellow", D1)
        assert entry.condition == Condition.UNLOAD_ERROR
        assert entry.message == "busy"

        # Only the counts follow while removal keeps failing
        result = settle(reconciler)

        assert result.requeue_after == CONFIG.retry_failure
        assert result.errors

    # Removal succeeds once the problem goes away
    settle(reconciler)

    assert state.list_declarations(True) == []
    assert database.list_extracted() == {}


def test_deleting_without_record(state, database):
    state.apply_declaration(CacheDeclaration("yellow", "", IMAGE, D1, deleting=True))
    reconciler = create_reconciler(state, database)

    result = reconciler.reconcile()

    assert not result.mutated
    assert state.all_status_records() == []


def test_cancelled_between_declarations(state, database):
    declare(state, "green")
    declare(state, "yellow")
    reconciler = create_reconciler(state, database)

    cancel = CancelToken()
    seen = []

    def step(declaration, state, token):
        seen.append(declaration.name)
        cancel.cancel()
        return False

    with mock.patch.object(reconciler, "_reconcile_declaration", side_effect=step):
        result = reconciler.reconcile(cancel)

    assert seen == ["green"]
    assert not result.mutated
    assert result.requeue_after == CONFIG.retry_failure


def test_declaration_phases(state, database):
    reconciler = create_reconciler(state, database)

    record = StatusRecord("r")
    record.status = mock.Mock()
    record.status.get_entry.return_value = None

    pass_state = _PassState({CacheKey("", "on-disk", D1): True})

    def phase(declaration):
        return reconciler._declaration_phase(declaration, record, pass_state)

    assert phase(CacheDeclaration("x", image=IMAGE)) == DeclarationPhase.AWAITING_DIGEST
    assert (
        phase(CacheDeclaration("x", "", IMAGE, D1, deleting=True))
        == DeclarationPhase.DELETING
    )
    assert (
        phase(CacheDeclaration("on-disk", "", IMAGE, D1)) == DeclarationPhase.EXTRACTED
    )
    assert (
        phase(CacheDeclaration("x", "", IMAGE, D1))
        == DeclarationPhase.NEEDS_FINALIZER
    )

    record.finalizers.append(finalizer_name("x"))

    assert phase(CacheDeclaration("x", "", IMAGE, D1)) == DeclarationPhase.EXTRACTING


def test_extract_requires_digest(state, database):
    reconciler = create_reconciler(state, database)

    with pytest.raises(InvariantError):
        reconciler._extract(
            CacheDeclaration("x", image=IMAGE), StatusRecord("r"), _PassState({}), None
        )


def test_status_of_requires_status():
    record = StatusRecord("r")

    with pytest.raises(InvariantError):
        status_of(record)

    record.status = NodeStatus(node_name=NODE)

    assert status_of(record) is record.status


def test_missing_status_fails_declaration(state, database):
    declare(state)
    reconciler = create_reconciler(state, database)
    settle(reconciler)

    with mock.patch(
        "kcache.engine.reconciler.record_phase", return_value=RecordPhase.INVENTORY_POPULATED
    ):
        record = get_record(state)
        record.status = None

        with mock.patch.object(reconciler.scope, "get_record", return_value=record):
            result = reconciler.reconcile()

    assert not result.mutated
    assert any(isinstance(e, InvariantError) for e in result.errors)
    assert result.requeue_after == CONFIG.retry_failure
