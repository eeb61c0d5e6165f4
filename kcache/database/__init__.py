"""
On-disk databases shared between the node agent and the mount server.

The cache database holds the extracted kernel caches and is owned by the node agent.
The usage registry records which mounts reference an extracted cache and is owned by
the mount server. Both live in their own directory tree and serialize access to it
through a lock per root that works across threads and processes.
"""

from .cache import CacheData, CacheDatabase, replace_url_tag
from .common import (
    CacheKey,
    DatabaseError,
    IncompatibleLayoutError,
    InvalidKeyError,
)
from .locking import DatabaseLocks
from .usage import UsageData, UsageRegistry

__all__ = [
    "CacheData",
    "CacheDatabase",
    "CacheKey",
    "DatabaseError",
    "DatabaseLocks",
    "IncompatibleLayoutError",
    "InvalidKeyError",
    "UsageData",
    "UsageRegistry",
    "replace_url_tag",
]
