"""
Per-node reconciliation of declared kernel caches.

Every pass compares the declarations of one scope kind with the caches extracted on
this node and moves each of them one step closer to the declared state. A pass commits
at most one externally visible change: as soon as a status record or finalizer has
been written, the pass ends and asks to be requeued shortly. Because every step is
derived from the current state again on the next pass, a crash at any point simply
repeats the interrupted step.

Status records are driven through two phases before any cache is handled, since a
record cannot be created with a status:

    MISSING -> CREATED -> INVENTORY_POPULATED

Each declaration is then in one of the phases of DeclarationPhase. A declaration
whose digest is missing from disk first gets its finalizer and is then extracted, so
the finalizer is always in place before any bytes land on the node.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from kcache.cancel import Cancelled, CancelToken
from kcache.cluster import ApiError, CacheDeclaration
from kcache.config import AgentConfig
from kcache.database import CacheDatabase, CacheKey, DatabaseError, InvalidKeyError
from kcache.extract import ExtractionCancelled, ExtractionError
from kcache.gpu import detect_gpus, GpuGroup
from kcache.logger import describe, log
from kcache.status import (
    CacheCounts,
    CacheStatus,
    cache_name_of_finalizer,
    Condition,
    EventReason,
    finalizer_name,
    NodeStatus,
    StatusRecord,
)
from .scope import Scope

# Failures that abort the handling of a single declaration or cache entry
TRANSIENT_ERRORS = (ApiError, DatabaseError, OSError)


class InvariantError(Exception):
    """An internal step was invoked without the inputs it requires."""


class RecordPhase(Enum):
    MISSING = "Missing"
    CREATED = "Created"
    INVENTORY_POPULATED = "InventoryPopulated"


class DeclarationPhase(Enum):
    AWAITING_DIGEST = "AwaitingDigest"
    DELETING = "Deleting"
    EXTRACTED = "Extracted"
    FAILED = "Failed"
    NEEDS_FINALIZER = "NeedsFinalizer"
    EXTRACTING = "Extracting"


@dataclass
class ReconcileResult:
    """
    Outcome of a reconciliation pass.

    A requeue delay of None means that there is nothing left to do until something
    changes.
    """

    requeue_after: Optional[float] = None
    mutated: bool = False
    errors: List[Exception] = field(default_factory=list)


@dataclass
class _PassState:
    """Bookkeeping of a single pass."""

    # Extracted caches of this scope, False once matched to a declaration
    extracted: Dict[CacheKey, bool]

    # Resolved digest of every live declaration by (namespace, name)
    declared: Dict[Tuple[str, str], str] = field(default_factory=dict)

    counts: Dict[str, CacheCounts] = field(default_factory=dict)
    records: Dict[str, Optional[StatusRecord]] = field(default_factory=dict)
    errors: List[Exception] = field(default_factory=list)
    in_use: bool = False

    def counts_for(self, namespace: str) -> CacheCounts:
        return self.counts.setdefault(namespace, CacheCounts())


def record_phase(record: Optional[StatusRecord]) -> RecordPhase:
    if record is None:
        return RecordPhase.MISSING
    elif record.status is None:
        return RecordPhase.CREATED
    else:
        return RecordPhase.INVENTORY_POPULATED


def status_of(record: StatusRecord) -> NodeStatus:
    """Return the status of a record whose inventory has been populated."""
    if record.status is None:
        raise InvariantError(f"status record {record.name} has no status yet")

    return record.status


class NodeReconciler:
    """
    Reconciles the declarations of one scope kind with the caches on this node.

    Passes are serialized, so the reconciler can safely be triggered from multiple
    threads.
    """

    def __init__(
        self,
        scope: Scope,
        database: CacheDatabase,
        config: Optional[AgentConfig] = None,
        gpu_detector: Optional[Callable[[], List[GpuGroup]]] = None,
    ):
        self.scope = scope
        self.database = database
        self.config = config or AgentConfig(node_name=scope.node_name)

        if gpu_detector is None:
            self._detect_gpus = lambda: detect_gpus(self.config.no_gpu)
        else:
            self._detect_gpus = gpu_detector

        self._mutex = threading.Lock()

        # Caches for which a blocked deletion was already reported
        self._reported_deleting: Set[CacheKey] = set()

    def reconcile(self, cancel: Optional[CancelToken] = None) -> ReconcileResult:
        """Run a single reconciliation pass."""
        if cancel is None:
            cancel = CancelToken()

        with self._mutex:
            log.debug(f"starting {self.scope.kind} reconciliation pass")

            result = self._reconcile(cancel)

            log.debug(
                f"finished {self.scope.kind} reconciliation pass "
                f"(requeue after {result.requeue_after}, mutated {result.mutated}, "
                f"{len(result.errors)} errors)"
            )

            return result

    def _reconcile(self, cancel: CancelToken) -> ReconcileResult:
        try:
            declarations = self.scope.list_declarations()
            extracted = self.database.list_extracted()
        except TRANSIENT_ERRORS as e:
            log.error(f"failed to list {self.scope.kind} caches: {e}")
            return ReconcileResult(self.config.retry_failure, errors=[e])

        state = _PassState(
            {key: True for key in extracted if self.scope.owns(key.namespace)},
            {
                (d.namespace, d.name): d.resolved_digest
                for d in declarations
                if d.resolved_digest and not d.deleting
            },
        )

        if not declarations and not state.extracted:
            log.debug(f"no {self.scope.kind} caches declared or extracted")
            return ReconcileResult()

        for declaration in declarations:
            try:
                cancel.check()

                if self._reconcile_declaration(declaration, state, cancel):
                    return self._mutated(state)
            except (Cancelled, ExtractionCancelled):
                return self._cancelled(state)
            except (InvariantError,) + TRANSIENT_ERRORS as e:
                log.error(
                    "failed to reconcile "
                    f"{describe(declaration.namespace, declaration.name)}: {e}"
                )
                state.errors.append(e)

        for key, seen in list(state.extracted.items()):
            if not seen:
                continue

            try:
                cancel.check()

                if self._reconcile_stranded(key, state):
                    return self._mutated(state)
            except Cancelled:
                return self._cancelled(state)
            except (InvariantError,) + TRANSIENT_ERRORS as e:
                log.error(
                    "failed to clean up stranded "
                    f"{describe(key.namespace, key.name, key.digest)}: {e}"
                )
                state.errors.append(e)

        try:
            if self._sweep_finalizers(declarations, state):
                return self._mutated(state)

            if self._update_counts(state):
                return self._mutated(state)
        except (InvariantError,) + TRANSIENT_ERRORS as e:
            log.error(f"failed to finish {self.scope.kind} reconciliation: {e}")
            state.errors.append(e)

        if state.errors:
            return ReconcileResult(self.config.retry_failure, errors=state.errors)
        elif not declarations and not state.in_use:
            return ReconcileResult()
        else:
            # The mount server doesn't notify us of usage changes
            return ReconcileResult(self.config.usage_poll)

    def _mutated(self, state: _PassState) -> ReconcileResult:
        return ReconcileResult(
            self.config.retry_status_update, mutated=True, errors=state.errors
        )

    def _cancelled(self, state: _PassState) -> ReconcileResult:
        log.info(f"{self.scope.kind} reconciliation pass cancelled")
        return ReconcileResult(self.config.retry_failure, errors=state.errors)

    def _get_record(self, namespace: str, state: _PassState) -> Optional[StatusRecord]:
        """Fetch the status record of a namespace once per pass."""
        if namespace not in state.records:
            state.records[namespace] = self.scope.get_record(namespace)

        return state.records[namespace]

    def _declaration_phase(
        self, declaration: CacheDeclaration, record: StatusRecord, state: _PassState
    ) -> DeclarationPhase:
        if not declaration.resolved_digest:
            return DeclarationPhase.AWAITING_DIGEST
        elif declaration.deleting:
            return DeclarationPhase.DELETING

        key = CacheKey(
            declaration.namespace, declaration.name, declaration.resolved_digest
        )

        if key in state.extracted:
            return DeclarationPhase.EXTRACTED

        entry = status_of(record).get_entry(
            declaration.name, declaration.resolved_digest
        )

        if entry is not None and entry.condition == Condition.ERROR:
            return DeclarationPhase.FAILED
        elif finalizer_name(declaration.name) not in record.finalizers:
            return DeclarationPhase.NEEDS_FINALIZER
        else:
            return DeclarationPhase.EXTRACTING

    def _reconcile_declaration(
        self, declaration: CacheDeclaration, state: _PassState, cancel: CancelToken
    ) -> bool:
        """Advance a declaration by one step. Returns if anything was changed."""
        namespace, name = declaration.namespace, declaration.name
        record = self._get_record(namespace, state)
        phase = record_phase(record)

        if record is None:
            if declaration.deleting:
                log.info(f"{describe(namespace, name)} being deleted without record")
                return False

            self.scope.create_record(namespace)
            return True
        elif phase == RecordPhase.CREATED:
            self._populate_inventory(record)
            return True

        step = self._declaration_phase(declaration, record, state)
        digest = declaration.resolved_digest

        log.debug(f"{describe(namespace, name, digest)} is {step.value}")

        if step == DeclarationPhase.AWAITING_DIGEST or not digest:
            log.info(f"{describe(namespace, name)} has no resolved digest yet")
            return False

        key = CacheKey(namespace, name, digest)

        if key in state.extracted:
            state.extracted[key] = False

        counts = state.counts_for(namespace)
        counts.nodes = 1

        if step == DeclarationPhase.DELETING:
            in_use, mutated = self._remove_cache(record, key, state)

            if mutated:
                return True
            elif in_use:
                state.in_use = True
                self._report_deleting(record, key)

                if key in state.extracted:
                    return self._refresh_entry(declaration, record, state)

                counts.in_use += 1

            return False
        elif step == DeclarationPhase.EXTRACTED:
            return self._refresh_entry(declaration, record, state)
        elif step == DeclarationPhase.FAILED:
            log.debug(f"{describe(namespace, name, digest)} failed before, skipping")
            counts.add(Condition.ERROR)
            return False
        elif step == DeclarationPhase.NEEDS_FINALIZER:
            return self.scope.add_finalizer(record, name)
        elif step == DeclarationPhase.EXTRACTING:
            self._extract(declaration, record, state, cancel)
            return True
        else:
            raise InvariantError(f"unhandled declaration phase {step}")

    def _populate_inventory(self, record: StatusRecord) -> None:
        """Record the GPUs of this node in a freshly created status record."""
        updated = record.copy()
        updated.status = NodeStatus(
            node_name=self.scope.node_name, gpu_inventory=self._detect_gpus()
        )

        updated = self.scope.update_status(updated, "add GPU inventory")

        self.scope.record_event(
            updated,
            EventReason.CREATED,
            f"{self.scope.kind} status record created on node "
            f'"{self.scope.node_name}"',
        )

    def _extract(
        self,
        declaration: CacheDeclaration,
        record: StatusRecord,
        state: _PassState,
        cancel: CancelToken,
    ) -> None:
        """Extract the declared digest and record the outcome in the status record."""
        namespace, name = declaration.namespace, declaration.name
        digest = declaration.resolved_digest

        if digest is None or record.status is None:
            raise InvariantError(f"cannot extract {describe(namespace, name)}")

        entry = CacheStatus()

        try:
            result = self.database.extract(
                namespace,
                name,
                declaration.image,
                digest,
                cancel.child(self.config.extract_timeout),
            )
        except ExtractionCancelled:
            if cancel.cancelled:
                raise

            entry.set_condition(
                Condition.ERROR,
                f"extraction timed out after {self.config.extract_timeout}s",
            )
        except (ExtractionError, InvalidKeyError) as e:
            entry.set_condition(Condition.ERROR, str(e))
        else:
            entry.set_condition(Condition.EXTRACTED)
            entry.compatible_ids = list(result.compatible_ids)
            entry.incompatible_ids = list(result.incompatible_ids)

            data = self.database.get_cache_file(namespace, name)
            if data is not None:
                entry.volume_size = data.sizes.get(digest, 0)

        updated = record.copy()
        status = status_of(updated)
        status.set_entry(name, digest, entry)
        self._drop_failed_digests(status, namespace, name, state)

        self.scope.update_status(
            updated, f"add {describe(namespace, name, digest)} ({entry.condition.value})"
        )

    def _drop_failed_digests(
        self, status: NodeStatus, namespace: str, name: str, state: _PassState
    ) -> bool:
        """
        Forget the failed digests of a cache that have been superseded.

        A digest that failed to extract never reaches the disk, so nothing else would
        ever remove its entry. Entries of the declared digest and of digests on disk
        are kept. Returns whether any entry was removed.
        """
        declared = state.declared.get((namespace, name))

        failed = [
            digest
            for digest, entry in status.cache_statuses.get(name, {}).items()
            if entry.condition == Condition.ERROR
            and digest != declared
            and CacheKey(namespace, name, digest) not in state.extracted
        ]

        for digest in failed:
            log.info(f"forgetting failed {describe(namespace, name, digest)}")
            status.remove_entry(name, digest)

        return bool(failed)

    def _live_mounts(self, key: CacheKey) -> List[str]:
        usage = self.database.usage.get_usage(key.namespace, key.name, key.digest)
        return list(usage.mount_handles) if usage else []

    def _refresh_entry(
        self, declaration: CacheDeclaration, record: StatusRecord, state: _PassState
    ) -> bool:
        """
        Bring the status of an extracted digest up to date with the databases.

        The size comes from the cache metadata and the mounts from the usage registry.
        An entry that went missing from the status record is rebuilt from the
        compatibility recorded upon extraction.
        """
        namespace, name = declaration.namespace, declaration.name
        digest = declaration.resolved_digest

        if digest is None or record.status is None:
            raise InvariantError(f"cannot refresh {describe(namespace, name)}")

        data = self.database.get_cache_file(namespace, name)
        current = record.status.get_entry(name, digest)

        if current is None:
            log.info(f"{describe(namespace, name, digest)} has no status, rebuilding it")

            entry = CacheStatus()
            if data is not None and digest in data.compatibility:
                entry.compatible_ids = list(data.compatibility[digest].compatible_ids)
                entry.incompatible_ids = list(
                    data.compatibility[digest].incompatible_ids
                )
        else:
            entry = CacheStatus.from_json(current.to_json())

        if data is None:
            log.error(f"unable to read cache file of {describe(namespace, name)}")
            entry.volume_size = 0
        else:
            entry.volume_size = data.sizes.get(digest, 0)

        key = CacheKey(namespace, name, digest)
        mounts = self._live_mounts(key)

        if current is not None and current.active_mounts != mounts:
            self._report_mount_changes(record, name, current.active_mounts, mounts)

        entry.active_mounts = mounts

        if mounts:
            if entry.condition != Condition.RUNNING:
                entry.set_condition(Condition.RUNNING)
        elif entry.condition != Condition.EXTRACTED:
            entry.set_condition(Condition.EXTRACTED)

        updated = record.copy()
        status = status_of(updated)
        dropped = self._drop_failed_digests(status, namespace, name, state)

        if dropped or not entry.same_as(current):
            if not entry.same_as(current):
                entry.last_updated = time.time()

            status.set_entry(name, digest, entry)

            self.scope.update_status(
                updated, f"refresh {describe(namespace, name, digest)}"
            )
            return True

        counts = state.counts_for(namespace)
        counts.add(entry.condition)
        counts.running_mounts += len(mounts)

        return False

    def _report_mount_changes(
        self, record: StatusRecord, name: str, old: List[str], new: List[str]
    ) -> None:
        """Record an event for every mount that appeared or went away since last time."""
        count = len(old)

        for handle in old:
            if handle not in new:
                count -= 1
                self.scope.record_event(
                    record,
                    EventReason.CACHE_RELEASED,
                    f'cache "{name}" no longer used by "{handle}", use count {count}',
                )

        for handle in new:
            if handle not in old:
                count += 1
                self.scope.record_event(
                    record,
                    EventReason.CACHE_USED,
                    f'cache "{name}" used by "{handle}", use count {count}',
                )

    def _report_deleting(self, record: StatusRecord, key: CacheKey) -> None:
        if key in self._reported_deleting:
            return

        usage = self.database.usage.get_usage(key.namespace, key.name, key.digest)
        count = usage.ref_count if usage else 0

        self.scope.record_event(
            record,
            EventReason.DELETING,
            f'cache "{key.name}" being deleted but still in use, use count {count}',
            warning=True,
        )

        self._reported_deleting.add(key)

    def _remove_cache(
        self, record: Optional[StatusRecord], key: CacheKey, state: _PassState
    ) -> Tuple[bool, bool]:
        """
        Remove an extracted cache from the node and forget about it.

        Once the cache is gone from disk its status entry is deleted, and once the
        status no longer mentions the cache its finalizer is removed. Each of these
        is a separate step. Failed digests that were superseded are forgotten along
        with the entry. Returns whether the cache is still in use and whether the
        status record was changed.
        """
        namespace, name, digest = key.namespace, key.name, key.digest

        try:
            in_use = self.database.remove(namespace, name, digest)
        except TRANSIENT_ERRORS as e:
            log.error(f"failed to remove {describe(namespace, name, digest)}: {e}")
            state.errors.append(e)

            return False, self._mark_unload_error(record, key, str(e))

        if in_use:
            log.info(f"{describe(namespace, name, digest)} still in use, not removed")
            return True, False

        self._reported_deleting.discard(key)

        if record is None or record.status is None:
            return False, False

        updated = record.copy()
        status = status_of(updated)

        removed = status.remove_entry(name, digest)
        dropped = self._drop_failed_digests(status, namespace, name, state)

        if removed or dropped:
            if not status.cache_statuses:
                status.counts = CacheCounts()

            self.scope.update_status(
                updated, f"remove {describe(namespace, name, digest)}"
            )
            return False, True

        if name in status.cache_statuses:
            # Other digests of the cache are still tracked
            return False, False

        return False, self.scope.remove_finalizer(record, name)

    def _mark_unload_error(
        self, record: Optional[StatusRecord], key: CacheKey, message: str
    ) -> bool:
        if record is None or record.status is None:
            return False

        entry = record.status.get_entry(key.name, key.digest)
        if entry is None or entry.condition == Condition.UNLOAD_ERROR:
            return False

        entry = CacheStatus.from_json(entry.to_json())
        entry.set_condition(Condition.UNLOAD_ERROR, message)
        entry.last_updated = time.time()

        updated = record.copy()
        status_of(updated).set_entry(key.name, key.digest, entry)

        self.scope.update_status(
            updated, f"unload error {describe(key.namespace, key.name, key.digest)}"
        )
        return True

    def _reconcile_stranded(self, key: CacheKey, state: _PassState) -> bool:
        """
        Clean up an extracted cache that no live declaration refers to.

        This happens when a declaration disappeared before its deletion completed, or
        when its image moved on to a new digest. A stranded cache that is still mounted
        is kept and marked as outdated.
        """
        namespace, name, digest = key.namespace, key.name, key.digest

        log.info(f"{describe(namespace, name, digest)} is stranded")

        try:
            record = self._get_record(namespace, state)
        except ApiError as e:
            # Removal from disk doesn't depend on the record
            log.error(f"failed to get status record for '{namespace}': {e}")
            state.errors.append(e)
            record = None

        in_use, mutated = self._remove_cache(record, key, state)

        if mutated:
            return True
        elif not in_use:
            return False

        state.in_use = True

        if record is None or record.status is None:
            return False

        current = record.status.get_entry(name, digest)
        if current is None:
            return False

        mounts = self._live_mounts(key)

        if current.condition != Condition.OUTDATED or current.active_mounts != mounts:
            if current.active_mounts != mounts:
                self._report_mount_changes(record, name, current.active_mounts, mounts)

            entry = CacheStatus.from_json(current.to_json())
            entry.set_condition(Condition.OUTDATED)
            entry.active_mounts = mounts
            entry.last_updated = time.time()

            updated = record.copy()
            status_of(updated).set_entry(name, digest, entry)

            self.scope.update_status(
                updated, f"outdated {describe(namespace, name, digest)}"
            )
            return True

        counts = state.counts_for(namespace)
        counts.outdated_mounts += len(mounts)

        return False

    def _sweep_finalizers(
        self, declarations: List[CacheDeclaration], state: _PassState
    ) -> bool:
        """
        Remove finalizers of caches that are no longer tracked at all.

        A finalizer is left behind if a declaration vanished while its cache was
        cleaned up by the stranded cache walk.
        """
        declared = {(d.namespace, d.name) for d in declarations}
        on_disk = {(k.namespace, k.name) for k in state.extracted}

        for namespace, record in state.records.items():
            if record is None or record.status is None:
                continue

            for finalizer in record.finalizers:
                name = cache_name_of_finalizer(finalizer)

                if name is None:
                    continue
                elif (namespace, name) in declared or (namespace, name) in on_disk:
                    continue
                elif name in record.status.cache_statuses:
                    continue

                log.info(f"{describe(namespace, name)} no longer tracked")
                return self.scope.remove_finalizer(record, name)

        return False

    def _update_counts(self, state: _PassState) -> bool:
        """Write the aggregated counts of the first record whose counts changed."""
        for namespace, counts in sorted(state.counts.items()):
            record = self._get_record(namespace, state)

            if record is None or record.status is None:
                continue
            elif record.status.counts == counts:
                continue

            updated = record.copy()
            status_of(updated).counts = counts

            self.scope.update_status(updated, f"update counts {counts.to_json()}")
            return True

        return False
