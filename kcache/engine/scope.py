"""
Capabilities of the two kinds of declaration scope.

The reconciler is written once and instantiated per scope kind. Everything that
differs between namespace-scoped and cluster-scoped declarations is expressed here:
which declarations and on-disk entries belong to the scope, and how the status record
of a scope is found, created and modified through the cluster-state API.
"""

from __future__ import annotations

from typing import Dict, List, Optional
import uuid

from kcache.cluster import ApiError, CacheDeclaration, ClusterStateApi
from kcache.constants import LABEL_HOSTNAME
from kcache.logger import log
from kcache.status import EventReason, finalizer_name, StatusRecord


class Scope:
    """Access to the declarations and status records of one scope kind on a node."""

    cluster_scoped = False
    kind = "scope"

    def __init__(self, api: ClusterStateApi, node_name: str):
        self.api = api
        self.node_name = node_name

    @property
    def labels(self) -> Dict[str, str]:
        """Return the labels that identify the status records of this node."""
        return {LABEL_HOSTNAME: self.node_name}

    def owns(self, namespace: str) -> bool:
        """Check if declarations and cache entries in a namespace belong to the scope."""
        return (namespace == "") == self.cluster_scoped

    def list_declarations(self) -> List[CacheDeclaration]:
        return self.api.list_declarations(self.cluster_scoped)

    def get_record(self, namespace: str) -> Optional[StatusRecord]:
        """
        Retrieve the status record of this node for a namespace.

        Returns None if there is none yet. Multiple records for the same node are an
        error, since it's ambiguous which one to maintain.
        """
        records = self.api.list_status_records(namespace, self.labels)

        if len(records) > 1:
            names = ", ".join(r.name for r in records)
            raise ApiError(
                f"more than one {self.kind} status record for node {self.node_name} "
                f"in '{namespace}' ({names})"
            )

        return records[0] if records else None

    def create_record(self, namespace: str) -> StatusRecord:
        """Create the status record of this node for a namespace, without status."""
        record = StatusRecord(
            name=f"{self.node_name}-{str(uuid.uuid4())[:8]}",
            namespace=namespace,
            labels=self.labels,
        )

        log.info(f"creating {self.kind} status record {record.name} in '{namespace}'")
        return self.api.create_status_record(record)

    def update_status(self, record: StatusRecord, reason: str) -> StatusRecord:
        log.info(f"updating status of {self.kind} status record {record.name}: {reason}")
        return self.api.update_status(record)

    def add_finalizer(self, record: StatusRecord, cache_name: str) -> bool:
        """Add the finalizer of a cache to a status record. Returns if it was added."""
        finalizer = finalizer_name(cache_name)

        if finalizer in record.finalizers:
            return False

        updated = record.copy()
        updated.finalizers.append(finalizer)

        log.info(f"adding finalizer {finalizer} to {record.name}")
        self.api.update_status_record(updated)

        return True

    def remove_finalizer(self, record: StatusRecord, cache_name: str) -> bool:
        """Remove the finalizer of a cache from a status record, if it has it."""
        finalizer = finalizer_name(cache_name)

        if finalizer not in record.finalizers:
            return False

        updated = record.copy()
        updated.finalizers.remove(finalizer)

        log.info(f"removing finalizer {finalizer} from {record.name}")
        self.api.update_status_record(updated)

        return True

    def record_event(
        self,
        record: StatusRecord,
        reason: EventReason,
        message: str,
        warning: bool = False,
    ) -> None:
        log.debug(f"event {reason.value} on {record.name}: {message}")
        self.api.record_event(record, reason, message, warning)


class NamespaceScope(Scope):
    """Declarations bound to a namespace, with a status record per namespace."""

    kind = "namespace"


class ClusterScope(Scope):
    """Cluster-wide declarations, with a single status record without namespace."""

    cluster_scoped = True
    kind = "cluster"
