"""
Projection of the per-node status record that the node agent owns.

One status record exists per scope (a namespace, or the cluster) and per node. It
reports the node's GPU inventory, the state of every extracted cache of the scope and
aggregated counts. It also carries one finalizer per tracked cache so that a cache
declaration cannot disappear before its extracted copies on the node are cleaned up.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
import time
from typing import Any, Dict, List, Optional

from kcache.constants import FINALIZER_PREFIX, FINALIZER_SUFFIX
from kcache.gpu import GpuGroup


class Condition(Enum):
    """
    State of an extracted cache on a node.

    A cache starts out as Pending and becomes Extracted or Error once unpacked. It is
    Running while mounted and Outdated if it is still mounted after being superseded
    or undeclared. UnloadError indicates that it could not be removed.
    """

    PENDING = "Pending"
    EXTRACTED = "Extracted"
    RUNNING = "Running"
    ERROR = "Error"
    OUTDATED = "Outdated"
    UNLOAD_ERROR = "UnloadError"


class EventReason(Enum):
    """Reasons of events recorded against a status record."""

    CREATED = "Created"
    CACHE_USED = "CacheUsed"
    CACHE_RELEASED = "CacheReleased"
    DELETING = "Deleting"


@dataclass
class CacheStatus:
    """Observed state of a single digest of a cache on a node."""

    condition: Condition = Condition.PENDING
    message: str = ""
    compatible_ids: List[int] = field(default_factory=list)
    incompatible_ids: List[int] = field(default_factory=list)
    volume_size: int = 0
    active_mounts: List[str] = field(default_factory=list)
    last_updated: float = field(default_factory=time.time)

    def set_condition(self, condition: Condition, message: str = "") -> None:
        """Make the specified condition the only active one."""
        self.condition = condition
        self.message = message

    def same_as(self, other: Optional[CacheStatus]) -> bool:
        """Check if the status equals another one, disregarding the update timestamp."""
        return other is not None and self.to_json(False) == other.to_json(False)

    def to_json(self, timestamp: bool = True) -> Dict[str, Any]:
        obj: Dict[str, Any] = {
            "condition": self.condition.value,
            "message": self.message,
            "compatibleDeviceIds": list(self.compatible_ids),
            "incompatibleDeviceIds": list(self.incompatible_ids),
            "volumeSize": self.volume_size,
            "activeMounts": list(self.active_mounts),
        }

        if timestamp:
            obj["lastUpdated"] = self.last_updated

        return obj

    @staticmethod
    def from_json(obj: Dict[str, Any]) -> CacheStatus:
        return CacheStatus(
            condition=Condition(obj["condition"]),
            message=obj.get("message", ""),
            compatible_ids=list(obj.get("compatibleDeviceIds") or []),
            incompatible_ids=list(obj.get("incompatibleDeviceIds") or []),
            volume_size=int(obj.get("volumeSize", 0)),
            active_mounts=list(obj.get("activeMounts") or []),
            last_updated=float(obj.get("lastUpdated", 0.0)),
        )


@dataclass
class CacheCounts:
    """Aggregated state of the caches of a scope on a node."""

    nodes: int = 0
    extracted: int = 0
    in_use: int = 0
    errors: int = 0
    running_mounts: int = 0
    outdated_mounts: int = 0

    def add(self, condition: Condition) -> None:
        """Account for a cache in the specified condition."""
        self.nodes = 1

        if condition == Condition.EXTRACTED:
            self.extracted += 1
        elif condition == Condition.RUNNING:
            self.in_use += 1
        elif condition in (Condition.ERROR, Condition.UNLOAD_ERROR):
            self.errors += 1

        # Pending is transient and outdated mounts are counted separately

    def to_json(self) -> Dict[str, int]:
        return {
            "nodes": self.nodes,
            "extracted": self.extracted,
            "inUse": self.in_use,
            "errors": self.errors,
            "runningMounts": self.running_mounts,
            "outdatedMounts": self.outdated_mounts,
        }

    @staticmethod
    def from_json(obj: Dict[str, Any]) -> CacheCounts:
        return CacheCounts(
            nodes=int(obj.get("nodes", 0)),
            extracted=int(obj.get("extracted", 0)),
            in_use=int(obj.get("inUse", 0)),
            errors=int(obj.get("errors", 0)),
            running_mounts=int(obj.get("runningMounts", 0)),
            outdated_mounts=int(obj.get("outdatedMounts", 0)),
        )


@dataclass
class NodeStatus:
    """
    Status of a status record.

    The GPU inventory is written once when the status is first populated and is never
    refreshed afterwards. Cache statuses are indexed by cache name and digest.
    """

    node_name: str
    gpu_inventory: List[GpuGroup] = field(default_factory=list)
    counts: CacheCounts = field(default_factory=CacheCounts)
    cache_statuses: Dict[str, Dict[str, CacheStatus]] = field(default_factory=dict)

    def get_entry(self, name: str, digest: str) -> Optional[CacheStatus]:
        """Retrieve the status of a digest of a cache, if there is one."""
        return self.cache_statuses.get(name, {}).get(digest)

    def set_entry(self, name: str, digest: str, entry: CacheStatus) -> None:
        """Set the status of a digest of a cache, leaving other digests untouched."""
        self.cache_statuses.setdefault(name, {})[digest] = entry

    def remove_entry(self, name: str, digest: str) -> bool:
        """
        Remove the status of a digest of a cache.

        The cache itself is removed once none of its digests remain. Returns whether
        anything was removed.
        """
        changed = False
        digests = self.cache_statuses.get(name)

        if digests is None:
            return False

        if digest in digests:
            del digests[digest]
            changed = True

        if not digests:
            del self.cache_statuses[name]
            changed = True

        return changed

    def to_json(self) -> Dict[str, Any]:
        return {
            "nodeName": self.node_name,
            "gpuInventory": [
                {"gpuType": g.gpu_type, "driverVersion": g.driver_version, "ids": g.ids}
                for g in self.gpu_inventory
            ],
            "counts": self.counts.to_json(),
            "cacheStatuses": {
                name: {digest: s.to_json() for digest, s in digests.items()}
                for name, digests in self.cache_statuses.items()
            },
        }

    @staticmethod
    def from_json(obj: Dict[str, Any]) -> NodeStatus:
        return NodeStatus(
            node_name=obj["nodeName"],
            gpu_inventory=[
                GpuGroup(g["gpuType"], g.get("driverVersion", ""), list(g.get("ids", [])))
                for g in obj.get("gpuInventory") or []
            ],
            counts=CacheCounts.from_json(obj.get("counts") or {}),
            cache_statuses={
                name: {
                    digest: CacheStatus.from_json(s) for digest, s in digests.items()
                }
                for name, digests in (obj.get("cacheStatuses") or {}).items()
            },
        )


@dataclass
class StatusRecord:
    """
    Status record of a scope on a node.

    The namespace is empty for the record of cluster-scoped caches. The status is None
    until it has first been populated, since the cluster-state API does not allow a
    record to be created with a status.
    """

    name: str
    namespace: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    status: Optional[NodeStatus] = None
    resource_version: int = 0

    def copy(self) -> StatusRecord:
        """Return a deep copy that can be modified without affecting this record."""
        return copy.deepcopy(self)

    def to_json(self) -> Dict[str, Any]:
        return {
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "labels": dict(self.labels),
                "finalizers": list(self.finalizers),
                "resourceVersion": str(self.resource_version),
            },
            "status": self.status.to_json() if self.status else None,
        }


def finalizer_name(cache_name: str) -> str:
    """Return the finalizer that tracks a cache on a status record."""
    return f"{FINALIZER_PREFIX}{cache_name}{FINALIZER_SUFFIX}"


def cache_name_of_finalizer(finalizer: str) -> Optional[str]:
    """Return the cache tracked by a finalizer, or None if it isn't one of ours."""
    if finalizer.startswith(FINALIZER_PREFIX) and finalizer.endswith(FINALIZER_SUFFIX):
        name = finalizer[len(FINALIZER_PREFIX) : -len(FINALIZER_SUFFIX)]
        return name or None

    return None
