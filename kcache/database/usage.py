"""
Registry of the mounts that are using extracted caches.

The mount server records every mount handle that references an extracted cache, and
the node agent consults the registry before removing a cache. The mount server owns
the registry and is its only writer, the agent only ever reads it.

Usage is stored as one JSON file per cache key:

    <root>/<namespace|cluster-scoped>/<name>/<digest>/usage.json

Absence of a usage file simply means that the cache is not mounted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Any, Dict, Iterator, List, Optional, Tuple

from kcache.constants import USAGE_FILENAME
from kcache.logger import describe, log
from .common import (
    build_db_dir,
    check_layout,
    InvalidKeyError,
    is_dir_empty,
    load_json,
    remove_tree,
    save_json,
)
from .locking import DatabaseLocks, default_locks


@dataclass
class UsageData:
    """
    Usage of a single extracted cache.

    The reference count always equals the number of distinct mount handles.
    """

    cr_name: str
    cr_namespace: str
    digest: str

    mount_handles: List[str] = field(default_factory=list)
    ref_count: int = 0
    volume_size: int = 0

    def to_json(self) -> Dict[str, Any]:
        """Turn the usage into the document stored on disk."""
        return {
            "crName": self.cr_name,
            "crNamespace": self.cr_namespace,
            "digest": self.digest,
            "mountHandles": list(self.mount_handles),
            "refCount": self.ref_count,
            "volumeSize": self.volume_size,
        }

    @staticmethod
    def from_json(obj: Dict[str, Any]) -> UsageData:
        """Reconstruct usage from the document stored on disk."""
        return UsageData(
            cr_name=obj["crName"],
            cr_namespace=obj.get("crNamespace", ""),
            digest=obj["digest"],
            mount_handles=list(obj.get("mountHandles") or []),
            ref_count=int(obj.get("refCount", 0)),
            volume_size=int(obj.get("volumeSize", 0)),
        )


class UsageRegistry:
    """Filesystem rooted registry of mount handles per extracted cache."""

    def __init__(self, root: str, locks: DatabaseLocks = default_locks):
        """Open the registry at the specified root, creating it if needed."""
        self._root = root
        self._locks = locks

        with self._locks.lock(self._root):
            check_layout(self._root)

    @property
    def root(self) -> str:
        """Return the root directory of the registry."""
        return self._root

    def add_usage(
        self, namespace: str, name: str, digest: str, handle: str, size: int
    ) -> UsageData:
        """
        Record that a mount handle is using the specified cache.

        Adding a handle that is already recorded only refreshes the volume size.
        """
        if not digest:
            raise InvalidKeyError("digest is required")
        if not handle:
            raise InvalidKeyError("mount handle is required")

        parent_dir = build_db_dir(self._root, namespace, name, digest)
        usage_path = os.path.join(parent_dir, USAGE_FILENAME)

        with self._locks.lock(self._root):
            usage = self._read(usage_path)

            if usage is None:
                os.makedirs(parent_dir, exist_ok=True)

                usage = UsageData(cr_name=name, cr_namespace=namespace, digest=digest)

            if usage.volume_size != size:
                log.debug(
                    f"volume size of {describe(namespace, name, digest)} updated "
                    f"from {usage.volume_size} to {size}"
                )
                usage.volume_size = size

            if handle not in usage.mount_handles:
                usage.mount_handles.append(handle)
                usage.ref_count = len(usage.mount_handles)

            save_json(usage_path, usage.to_json())

        log.info(
            f"mount {handle} uses {describe(namespace, name, digest)} "
            f"(refcount {usage.ref_count})"
        )

        return usage

    def delete_usage(self, handle: str) -> bool:
        """
        Release a mount handle.

        The usage file is deleted along with any directories that become empty once the
        last handle of a cache is released. Returns whether the handle was found.
        """
        with self._locks.lock(self._root):
            for usage_path, usage in self._walk():
                if handle not in usage.mount_handles:
                    continue

                usage.mount_handles.remove(handle)
                usage.ref_count = len(usage.mount_handles)

                if usage.ref_count == 0:
                    os.remove(usage_path)
                    self._cascade_remove(os.path.dirname(usage_path))
                else:
                    save_json(usage_path, usage.to_json())

                log.info(
                    f"mount {handle} released "
                    f"{describe(usage.cr_namespace, usage.cr_name, usage.digest)} "
                    f"(refcount {usage.ref_count})"
                )

                return True

        log.debug(f"mount {handle} not found in usage registry")
        return False

    def get_usage(self, namespace: str, name: str, digest: str) -> Optional[UsageData]:
        """Retrieve usage of the specified cache, or None if it is not mounted."""
        usage_path = os.path.join(
            build_db_dir(self._root, namespace, name, digest), USAGE_FILENAME
        )

        with self._locks.lock(self._root):
            return self._read(usage_path)

    def get_usage_by_mount_handle(self, handle: str) -> Optional[UsageData]:
        """Retrieve usage of the cache a mount handle refers to, or None if unknown."""
        with self._locks.lock(self._root):
            for _, usage in self._walk():
                if handle in usage.mount_handles:
                    return usage

        return None

    def in_use(self, namespace: str, name: str, digest: str) -> bool:
        """
        Check if the specified cache is referenced by any mount.

        An unreadable usage file counts as a reference since its mounts are unknown.
        """
        usage_path = os.path.join(
            build_db_dir(self._root, namespace, name, digest), USAGE_FILENAME
        )

        with self._locks.lock(self._root):
            if not os.path.exists(usage_path):
                return False

            usage = self._read(usage_path)

        return usage is None or usage.ref_count > 0

    def list_usage(self) -> List[UsageData]:
        """Retrieve usage of all mounted caches."""
        with self._locks.lock(self._root):
            return [usage for _, usage in self._walk()]

    def _walk(self) -> Iterator[Tuple[str, UsageData]]:
        """Iterate over all readable usage files. The root lock must be held."""
        for dirpath, dirnames, filenames in os.walk(self._root):
            dirnames.sort()

            if USAGE_FILENAME not in filenames:
                continue

            usage = self._read(os.path.join(dirpath, USAGE_FILENAME))
            if usage is not None:
                yield os.path.join(dirpath, USAGE_FILENAME), usage

    @staticmethod
    def _read(usage_path: str) -> Optional[UsageData]:
        """Read a usage file, returning None if it is missing or unreadable."""
        try:
            return UsageData.from_json(load_json(usage_path))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.error(f"unreadable usage file {usage_path}: {e}")
            return None

    def _cascade_remove(self, digest_dir: str) -> None:
        """Remove the digest, name and scope directories while they are empty."""
        path = digest_dir

        # Digest, name and scope directories are at most three levels below the root
        for _ in range(3):
            if os.path.realpath(path) == os.path.realpath(self._root):
                break

            if not is_dir_empty(path):
                break

            log.debug(f"deleting empty usage directory {path}")
            remove_tree(path)

            path = os.path.dirname(path)
