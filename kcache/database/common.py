"""Data structures and helpers shared by the cache database and usage registry."""

from __future__ import annotations

from dataclasses import dataclass
import json
import os
import shutil
from typing import Any, Optional

import semver

from kcache.constants import (
    CLUSTER_SCOPED_SUBDIR,
    LAYOUT_FILENAME,
    LAYOUT_VERSION,
)
from kcache.logger import log


class DatabaseError(Exception):
    """Base class of errors raised by the on-disk databases."""


class InvalidKeyError(DatabaseError, ValueError):
    """Exception raised when a database key is incomplete or uses a reserved name."""


class IncompatibleLayoutError(DatabaseError):
    """Exception raised when a database root was written with another layout."""


@dataclass(frozen=True)
class CacheKey:
    """
    Identity of an extracted cache.

    The namespace is empty for cluster-scoped caches. Digest is the resolved content
    digest of the image the cache was extracted from.
    """

    namespace: str
    name: str
    digest: str

    @property
    def cluster_scoped(self) -> bool:
        """Return whether the key belongs to a cluster-scoped cache."""
        return self.namespace == ""


def scope_dir_name(namespace: str) -> str:
    """Return the name of the directory holding all caches of a scope."""
    if namespace == CLUSTER_SCOPED_SUBDIR:
        raise InvalidKeyError(f"namespace '{namespace}' is reserved")

    return namespace if namespace else CLUSTER_SCOPED_SUBDIR


def namespace_from_dir(scope_dir: str) -> str:
    """Return the namespace of a scope directory name (inverse of scope_dir_name)."""
    return "" if scope_dir == CLUSTER_SCOPED_SUBDIR else scope_dir


def build_db_dir(
    base_path: str, namespace: str, name: str, digest: Optional[str] = None
) -> str:
    """
    Build the path of an entry within a database root.

    The result is "<base>/<namespace|cluster-scoped>/<name>" with "/<digest>" appended
    if a digest is specified.
    """
    if not name:
        raise InvalidKeyError("cache name is required")

    path = os.path.join(base_path, scope_dir_name(namespace), name)

    if digest:
        path = os.path.join(path, digest)

    return path


def dir_size(path: str) -> int:
    """Calculate the total size of the regular files within a directory tree."""
    total = 0

    for dirpath, _, filenames in os.walk(path):
        for fn in filenames:
            fp = os.path.join(dirpath, fn)

            if not os.path.islink(fp):
                total += os.path.getsize(fp)

    return total


def is_dir_empty(path: str, ignore_file: Optional[str] = None) -> bool:
    """
    Check if a directory is empty, optionally disregarding a single file name.

    A directory that does not exist is considered to be empty.
    """
    try:
        entries = os.listdir(path)
    except FileNotFoundError:
        return True

    return all(entry == ignore_file for entry in entries)


def remove_tree(path: str) -> None:
    """Remove a directory tree, ignoring that it may already be gone."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass


def load_json(path: str) -> Any:
    """Deserialize the JSON document stored in a file."""
    with open(path, "r") as f:
        return json.load(f)


def save_json(path: str, obj: Any) -> None:
    """
    Serialize an object to a JSON file.

    The document is written to a temporary file first and then renamed into place so
    readers never observe a partially written file.
    """
    tmp_path = path + ".tmp"

    with open(tmp_path, "w") as f:
        json.dump(obj, f, indent=2)

    os.replace(tmp_path, path)


def check_layout(root: str) -> None:
    """
    Verify that a database root uses a layout compatible with this version.

    The layout version is recorded upon first use of the root.
    """
    os.makedirs(root, exist_ok=True)
    layout_path = os.path.join(root, LAYOUT_FILENAME)

    try:
        with open(layout_path, "r") as f:
            found = f.read().strip()
    except FileNotFoundError:
        with open(layout_path, "w") as f:
            f.write(LAYOUT_VERSION)

        log.debug(f"initialized database layout {LAYOUT_VERSION} at {root}")
        return

    try:
        found_version = semver.VersionInfo.parse(found)
    except ValueError:
        raise IncompatibleLayoutError(f"unreadable layout version '{found}' at {root}")

    if found_version.major != semver.VersionInfo.parse(LAYOUT_VERSION).major:
        raise IncompatibleLayoutError(
            f"incompatible layout at {root} ({found} != {LAYOUT_VERSION})"
        )
