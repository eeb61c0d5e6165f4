"""In-process implementation of the cluster-state API."""

from __future__ import annotations

import dataclasses
import threading
from typing import Dict, List, Tuple

from kcache.logger import log, summarize
from kcache.status import EventReason, finalizer_name, StatusRecord
from .api import (
    CacheDeclaration,
    ClusterStateApi,
    ConflictError,
    Event,
    NotFoundError,
    WatchCallback,
)


class InMemoryClusterState(ClusterStateApi):
    """
    Object store kept in memory.

    Objects carry a resource version that is bumped on every change, so stale updates
    are rejected the way a real API server would. A declaration that is deleted is only
    marked as deleting while any status record in its namespace still carries its
    finalizer, and disappears once the last such finalizer is removed.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._version = 0

        self._declarations: Dict[Tuple[str, str], CacheDeclaration] = {}
        self._records: Dict[Tuple[str, str], StatusRecord] = {}
        self._watchers: List[WatchCallback] = []

        self.events: List[Event] = []

    def watch(self, callback: WatchCallback) -> None:
        """Register a callback that is invoked after every change."""
        with self._lock:
            self._watchers.append(callback)

    def apply_declaration(self, declaration: CacheDeclaration) -> None:
        """Create or replace a declaration."""
        key = (declaration.namespace, declaration.name)

        with self._lock:
            existing = self._declarations.get(key)
            if existing is not None and existing.deleting:
                raise ConflictError(f"{declaration.name} is being deleted")

            self._declarations[key] = dataclasses.replace(declaration)

        self._notify("declaration", declaration.namespace, declaration.name)

    def delete_declaration(self, namespace: str, name: str) -> None:
        """Delete a declaration, deferring removal while finalizers reference it."""
        with self._lock:
            declaration = self._declarations.get((namespace, name))
            if declaration is None:
                raise NotFoundError(f"declaration {namespace}/{name} not found")

            declaration.deleting = True
            self._collect_declarations()

        self._notify("declaration", namespace, name)

    def get_declaration(self, namespace: str, name: str) -> CacheDeclaration:
        with self._lock:
            declaration = self._declarations.get((namespace, name))
            if declaration is None:
                raise NotFoundError(f"declaration {namespace}/{name} not found")

            return dataclasses.replace(declaration)

    def list_declarations(self, cluster_scoped: bool) -> List[CacheDeclaration]:
        with self._lock:
            return [
                dataclasses.replace(d)
                for _, d in sorted(self._declarations.items())
                if d.cluster_scoped == cluster_scoped
            ]

    def list_status_records(
        self, namespace: str, labels: Dict[str, str]
    ) -> List[StatusRecord]:
        with self._lock:
            return [
                r.copy()
                for _, r in sorted(self._records.items())
                if r.namespace == namespace
                and all(r.labels.get(k) == v for k, v in labels.items())
            ]

    def all_status_records(self) -> List[StatusRecord]:
        """List every status record in the store."""
        with self._lock:
            return [r.copy() for _, r in sorted(self._records.items())]

    def create_status_record(self, record: StatusRecord) -> StatusRecord:
        key = (record.namespace, record.name)

        with self._lock:
            if key in self._records:
                raise ConflictError(f"status record {record.name} already exists")

            stored = record.copy()
            stored.status = None
            stored.resource_version = self._next_version()
            self._records[key] = stored

            log.debug(f"created status record {summarize(stored.to_json())}")
            result = stored.copy()

        self._notify("record", record.namespace, record.name)
        return result

    def update_status_record(self, record: StatusRecord) -> StatusRecord:
        with self._lock:
            stored = self._current(record)
            stored.labels = dict(record.labels)
            stored.finalizers = list(record.finalizers)
            stored.resource_version = self._next_version()

            self._collect_declarations()
            result = stored.copy()

        self._notify("record", record.namespace, record.name)
        return result

    def update_status(self, record: StatusRecord) -> StatusRecord:
        with self._lock:
            stored = self._current(record)
            stored.status = record.copy().status
            stored.resource_version = self._next_version()

            log.debug(f"updated status of {record.name}: {summarize(stored.to_json())}")
            result = stored.copy()

        self._notify("record", record.namespace, record.name)
        return result

    def record_event(
        self,
        record: StatusRecord,
        reason: EventReason,
        message: str,
        warning: bool = False,
    ) -> None:
        with self._lock:
            self.events.append(
                Event(record.namespace, record.name, reason, message, warning)
            )

    def _current(self, record: StatusRecord) -> StatusRecord:
        """Look up the stored copy of a record and check it wasn't modified since."""
        stored = self._records.get((record.namespace, record.name))

        if stored is None:
            raise NotFoundError(f"status record {record.name} not found")
        elif stored.resource_version != record.resource_version:
            raise ConflictError(
                f"status record {record.name} was modified "
                f"(version {record.resource_version}, "
                f"current {stored.resource_version})"
            )

        return stored

    def _collect_declarations(self) -> None:
        """Drop deleting declarations that no finalizer references anymore."""
        for key, declaration in list(self._declarations.items()):
            if not declaration.deleting:
                continue

            finalizer = finalizer_name(declaration.name)
            referenced = any(
                r.namespace == declaration.namespace and finalizer in r.finalizers
                for r in self._records.values()
            )

            if not referenced:
                log.debug(f"declaration {key} no longer referenced, removing it")
                del self._declarations[key]

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def _notify(self, kind: str, namespace: str, name: str) -> None:
        with self._lock:
            watchers = list(self._watchers)

        for callback in watchers:
            callback(kind, namespace, name)
