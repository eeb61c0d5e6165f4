from .api import (
    ApiError,
    CacheDeclaration,
    ClusterStateApi,
    ConflictError,
    Event,
    NotFoundError,
    WatchCallback,
)
from .memory import InMemoryClusterState

__all__ = [
    "ApiError",
    "CacheDeclaration",
    "ClusterStateApi",
    "ConflictError",
    "Event",
    "InMemoryClusterState",
    "NotFoundError",
    "WatchCallback",
]
