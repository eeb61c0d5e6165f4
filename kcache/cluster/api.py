"""Interface of the cluster-state API consumed by the node agent."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import time
from typing import Callable, Dict, List, Optional

from kcache.status import EventReason, StatusRecord


# Called with the kind of object that changed ("declaration" or "record"), its
# namespace and its name
WatchCallback = Callable[[str, str, str], None]


class ApiError(Exception):
    """Transient failure of a cluster-state API call."""


class ConflictError(ApiError):
    """An object was modified concurrently or already exists."""


class NotFoundError(ApiError):
    """An object does not exist."""


@dataclass
class CacheDeclaration:
    """
    Desired state of a kernel cache, cluster-scoped if its namespace is empty.

    The resolved digest is set by the admission step once the image has been
    verified. Until then the declaration must not be extracted.
    """

    name: str
    namespace: str = ""
    image: str = ""
    resolved_digest: Optional[str] = None
    deleting: bool = False

    @property
    def cluster_scoped(self) -> bool:
        return not self.namespace


@dataclass
class Event:
    """Event recorded against a status record."""

    namespace: str
    record_name: str
    reason: EventReason
    message: str
    warning: bool = False
    timestamp: float = field(default_factory=time.time)


class ClusterStateApi(ABC):
    """
    Declarative object store shared by the cluster.

    All objects are returned as copies, changes only take effect through the update
    calls. Updates fail with ConflictError if the object changed since it was read.
    """

    @abstractmethod
    def watch(self, callback: WatchCallback) -> None:
        """Register a callback that is invoked after every change."""

    @abstractmethod
    def list_declarations(self, cluster_scoped: bool) -> List[CacheDeclaration]:
        """List either all cluster-scoped or all namespace-scoped declarations."""

    @abstractmethod
    def list_status_records(
        self, namespace: str, labels: Dict[str, str]
    ) -> List[StatusRecord]:
        """List the status records in a namespace that carry all specified labels."""

    @abstractmethod
    def create_status_record(self, record: StatusRecord) -> StatusRecord:
        """Create a status record. Its status is discarded."""

    @abstractmethod
    def update_status_record(self, record: StatusRecord) -> StatusRecord:
        """Update the labels and finalizers of a status record, but not its status."""

    @abstractmethod
    def update_status(self, record: StatusRecord) -> StatusRecord:
        """Update the status of a status record, but not its metadata."""

    @abstractmethod
    def record_event(
        self,
        record: StatusRecord,
        reason: EventReason,
        message: str,
        warning: bool = False,
    ) -> None:
        """Record an event against a status record."""
