"""Locking of database roots shared between threads and processes."""

import collections
from contextlib import contextmanager
import os
import threading
from typing import Dict, Iterator

import fasteners

from kcache.constants import LOCK_FILENAME


class DatabaseLocks:
    """
    Arbiter of exclusive access to database roots.

    A database root is a directory tree that is read and written by the node agent and
    by the mount server. The directory tree itself is the source of truth, so any
    sequence of directory create/modify/delete operations must happen while holding
    the lock of its root.

    Two levels of locking are combined. A mutex per root serializes threads within
    this process, and an fcntl based lock file within the root serializes processes.
    The latter alone would not suffice because fcntl locks are held per process rather
    than per thread.

    Mutexes are keyed by the real path of the root and are automatically garbage
    collected when no longer in use, so an arbiter can be shared by any number of
    isolated roots.
    """

    def __init__(self) -> None:
        """Instantiate an arbiter without any held locks."""
        self._global_lock = threading.Lock()

        self._locks: Dict[str, threading.Lock] = collections.defaultdict(threading.Lock)
        self._lock_users: Dict[str, int] = collections.defaultdict(int)

    @contextmanager
    def lock(self, root: str) -> Iterator[None]:
        """Acquire exclusive access to the database at the specified root."""
        key = os.path.realpath(root)

        # Retrieve mutex and increment user count
        with self._global_lock:
            self._lock_users[key] += 1
            mutex = self._locks[key]

        try:
            with mutex:
                os.makedirs(key, exist_ok=True)

                with fasteners.InterProcessLock(os.path.join(key, LOCK_FILENAME)):
                    yield
        finally:
            # Decrement user count and delete mutex if there are none left
            with self._global_lock:
                self._lock_users[key] -= 1

                if self._lock_users[key] == 0:
                    del self._lock_users[key]
                    del self._locks[key]

    @property
    def lock_count(self) -> int:
        """Return the number of roots currently locked or waited upon."""
        with self._global_lock:
            return len(self._locks)


# Arbiter shared by databases that are not given one explicitly
default_locks = DatabaseLocks()
