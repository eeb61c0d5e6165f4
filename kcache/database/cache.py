"""
Content-addressed database of extracted kernel caches.

The node agent unpacks the image of every declared cache onto the host, and the mount
server bind mounts the result into workloads. The agent owns this database and is the
only process that creates, updates or deletes entries. The mount server only reads it.

Extracted caches are laid out as:

    <root>/<namespace|cluster-scoped>/<name>/<digest>/<cache directories...>

and every name has a metadata file alongside its digests:

    <root>/<namespace|cluster-scoped>/<name>/cache.json

which records the image reference, the most recently extracted digest, the size of
every extracted digest and the GPU compatibility that was reported upon extraction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Any, Dict, List, Optional

from kcache.cancel import CancelToken
from kcache.constants import CACHE_FILENAME
from kcache.extract import Extractor, ExtractResult
from kcache.logger import describe, log
from .common import (
    build_db_dir,
    CacheKey,
    check_layout,
    dir_size,
    InvalidKeyError,
    is_dir_empty,
    load_json,
    namespace_from_dir,
    remove_tree,
    save_json,
)
from .locking import DatabaseLocks, default_locks
from .usage import UsageRegistry


def replace_url_tag(image: str, digest: str) -> str:
    """
    Pin an image reference to a digest.

    An existing "@<digest>" suffix and a tag following the last path component are
    replaced by "@<digest>". A colon before the last slash belongs to the registry
    port and is left alone. Returns an empty string if either input is empty.
    """
    if not image or not digest:
        return ""

    repository = image.split("@", 1)[0]
    colon = repository.rfind(":")

    if colon > repository.rfind("/"):
        repository = repository[:colon]

    return f"{repository}@{digest}"


@dataclass
class CacheData:
    """Metadata about the extracted digests of a single cache name."""

    image: str = ""
    resolved_digest: str = ""
    sizes: Dict[str, int] = field(default_factory=dict)
    compatibility: Dict[str, ExtractResult] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        """Turn the metadata into the document stored on disk."""
        return {
            "image": self.image,
            "resolvedDigest": self.resolved_digest,
            "sizes": dict(self.sizes),
            "compatibility": {
                digest: {
                    "compatibleIds": list(result.compatible_ids),
                    "incompatibleIds": list(result.incompatible_ids),
                }
                for digest, result in self.compatibility.items()
            },
        }

    @staticmethod
    def from_json(obj: Dict[str, Any]) -> CacheData:
        """Reconstruct metadata from the document stored on disk."""
        return CacheData(
            image=obj.get("image", ""),
            resolved_digest=obj.get("resolvedDigest", ""),
            sizes={k: int(v) for k, v in (obj.get("sizes") or {}).items()},
            compatibility={
                digest: ExtractResult(
                    compatible_ids=list(ids.get("compatibleIds") or []),
                    incompatible_ids=list(ids.get("incompatibleIds") or []),
                )
                for digest, ids in (obj.get("compatibility") or {}).items()
            },
        )


class CacheDatabase:
    """
    Filesystem rooted store of extracted caches keyed by (namespace, name, digest).

    All reads and writes happen while holding the lock of the database root. Removal
    additionally consults the usage registry and refuses to touch caches that are
    mounted.
    """

    def __init__(
        self,
        root: str,
        extractor: Extractor,
        usage: UsageRegistry,
        locks: DatabaseLocks = default_locks,
    ):
        """Open the database at the specified root, creating it if needed."""
        if os.path.realpath(root) == os.path.realpath(usage.root):
            raise ValueError("cache database and usage registry must not share a root")

        self._root = root
        self._extractor = extractor
        self._usage = usage
        self._locks = locks

        with self._locks.lock(self._root):
            check_layout(self._root)

    @property
    def root(self) -> str:
        """Return the root directory of the database."""
        return self._root

    @property
    def usage(self) -> UsageRegistry:
        """Return the usage registry consulted by this database."""
        return self._usage

    def extract(
        self,
        namespace: str,
        name: str,
        image: str,
        digest: str,
        cancel: Optional[CancelToken] = None,
    ) -> ExtractResult:
        """
        Extract the image of a cache at the specified digest.

        The image is unpacked into a staging directory that is only moved into place
        once unpacking succeeded, so a failed or cancelled extraction never leaves a
        partial digest directory behind. Extracting a digest that is already present
        does not unpack the image again.
        """
        pinned_image = replace_url_tag(image, digest)
        if not pinned_image:
            raise InvalidKeyError(f"unable to pin image '{image}' to digest '{digest}'")

        cache_dir = build_db_dir(self._root, namespace, name, digest)
        name_dir = os.path.dirname(cache_dir)
        staging_dir = os.path.join(name_dir, f".{digest}.partial")

        if cancel is None:
            cancel = CancelToken()

        with self._locks.lock(self._root):
            existing = self._read_cache_file(namespace, name)

            if (
                existing is not None
                and os.path.isdir(cache_dir)
                and digest in existing.sizes
                and digest in existing.compatibility
            ):
                log.info(f"{describe(namespace, name, digest)} already extracted")

                self._write_cache_file(namespace, name, image, digest)
                return existing.compatibility[digest]

            remove_tree(staging_dir)
            os.makedirs(staging_dir)

            log.info(f"extracting {pinned_image} for {describe(namespace, name)}")

            try:
                result = self._extractor.extract(pinned_image, staging_dir, cancel)

                remove_tree(cache_dir)
                os.rename(staging_dir, cache_dir)
            except BaseException as e:
                log.error(f"failed to extract {describe(namespace, name, digest)}: {e}")

                remove_tree(staging_dir)
                self._remove_directories(namespace, name, digest)
                raise

            try:
                size = dir_size(cache_dir)
            except OSError as e:
                log.error(f"unable to size {cache_dir}, continuing: {e}")
                size = 0

            self._write_cache_file(namespace, name, image, digest, size, result)

        log.info(
            f"extracted {describe(namespace, name, digest)} "
            f"(compatible {result.compatible_ids}, "
            f"incompatible {result.incompatible_ids})"
        )

        return result

    def list_extracted(self) -> Dict[CacheKey, bool]:
        """
        List all extracted caches.

        Every key is mapped to True so that callers can mark the entries they have
        processed.
        """
        extracted: Dict[CacheKey, bool] = {}

        with self._locks.lock(self._root):
            for scope_dir in self._subdirs(self._root):
                scope_path = os.path.join(self._root, scope_dir)

                for name in self._subdirs(scope_path):
                    name_path = os.path.join(scope_path, name)

                    for digest in self._subdirs(name_path):
                        key = CacheKey(namespace_from_dir(scope_dir), name, digest)
                        extracted[key] = True

        return extracted

    def get_cache_file(self, namespace: str, name: str) -> Optional[CacheData]:
        """Retrieve the metadata of a cache name, or None if it has none."""
        with self._locks.lock(self._root):
            return self._read_cache_file(namespace, name)

    def remove(self, namespace: str, name: str, digest: str) -> bool:
        """
        Remove an extracted cache from the host.

        Returns True without modifying anything if the cache is still mounted. Otherwise
        the digest directory is deleted, followed by the name directory (including its
        metadata) and the scope directory if those no longer contain other caches. If
        other digests of the same name remain, the metadata of the removed digest is
        cleared instead.
        """
        build_db_dir(self._root, namespace, name, digest)

        with self._locks.lock(self._root):
            if self._usage.in_use(namespace, name, digest):
                log.info(f"{describe(namespace, name, digest)} still in use")
                return True

            self._remove_directories(namespace, name, digest)

        return False

    def _remove_directories(self, namespace: str, name: str, digest: str) -> None:
        """Delete a digest directory and cascade upwards. The root lock must be held."""
        cache_dir = build_db_dir(self._root, namespace, name, digest)

        log.debug(f"deleting digest directory {cache_dir}")
        remove_tree(cache_dir)

        name_dir = os.path.dirname(cache_dir)

        if is_dir_empty(name_dir, CACHE_FILENAME):
            log.debug(f"deleting name directory {name_dir}")
            remove_tree(name_dir)

            scope_dir = os.path.dirname(name_dir)

            if is_dir_empty(scope_dir):
                log.debug(f"deleting scope directory {scope_dir}")
                remove_tree(scope_dir)
        else:
            log.debug(f"name directory {name_dir} not empty, updating metadata")
            self._write_cache_file(namespace, name, None, digest, remove=True)

    def _cache_file_path(self, namespace: str, name: str) -> str:
        return os.path.join(build_db_dir(self._root, namespace, name), CACHE_FILENAME)

    def _read_cache_file(self, namespace: str, name: str) -> Optional[CacheData]:
        """Read the metadata of a cache name. The root lock must be held."""
        path = self._cache_file_path(namespace, name)

        try:
            return CacheData.from_json(load_json(path))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError, AttributeError) as e:
            log.error(f"unreadable cache file {path}: {e}")
            return None

    def _write_cache_file(
        self,
        namespace: str,
        name: str,
        image: Optional[str],
        digest: str,
        size: int = 0,
        result: Optional[ExtractResult] = None,
        remove: bool = False,
    ) -> None:
        """
        Add or remove a digest in the metadata of a cache name.

        The image is left untouched if None is specified. The root lock must be held.
        """
        cache = self._read_cache_file(namespace, name)

        if cache is None:
            if remove:
                return

            cache = CacheData()

        if image is not None and cache.image != image:
            if cache.image:
                log.info(f"image of {describe(namespace, name)} updated to {image}")
            cache.image = image

        if remove:
            if cache.resolved_digest == digest:
                cache.resolved_digest = ""

            cache.sizes.pop(digest, None)
            cache.compatibility.pop(digest, None)
        else:
            cache.resolved_digest = digest

            if result is not None:
                cache.sizes[digest] = size
                cache.compatibility[digest] = result

        save_json(self._cache_file_path(namespace, name), cache.to_json())

    @staticmethod
    def _subdirs(path: str) -> List[str]:
        """List the visible subdirectories of a directory, ignoring a missing one."""
        try:
            entries = sorted(os.listdir(path))
        except FileNotFoundError:
            return []

        return [
            e
            for e in entries
            if not e.startswith(".") and os.path.isdir(os.path.join(path, e))
        ]
