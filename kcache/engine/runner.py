"""
Module that drives reconcilers from a single worker thread.

Passes of all reconcilers run one after another on the worker. A reconciler is run
when it is triggered by a change in the cluster state or when the requeue delay of its
last pass expires. Triggers that arrive while a reconciler is already waiting to run
are coalesced into a single pass.
"""

from __future__ import annotations

import queue
import threading
import time
from typing import Dict, List, Optional, Set

from kcache.cancel import CancelToken
from kcache.logger import log
from .reconciler import NodeReconciler, ReconcileResult


class ReconcileLoop:
    """Single-worker loop over a fixed set of reconcilers."""

    def __init__(self, reconcilers: List[NodeReconciler]) -> None:
        self.reconcilers = reconcilers

        # Indices of triggered reconcilers, None wakes up the worker
        self._queue: queue.Queue[Optional[int]] = queue.Queue()

        self._lock = threading.Lock()
        self._pending: Set[int] = set()
        self._deadlines: Dict[int, float] = {}

        self._cancel = CancelToken()
        self._thread: Optional[threading.Thread] = None

    def trigger(self, namespace: Optional[str] = None) -> None:
        """Trigger the reconcilers owning a namespace, or all of them if None."""
        for index, reconciler in enumerate(self.reconcilers):
            if namespace is not None and not reconciler.scope.owns(namespace):
                continue

            with self._lock:
                if index in self._pending:
                    continue

                self._pending.add(index)

            self._queue.put(index)

    def on_change(self, kind: str, namespace: str, name: str) -> None:
        """Watch callback for the cluster state."""
        log.debug(f"{kind} {namespace}/{name} changed")
        self.trigger(namespace)

    def start(self) -> None:
        """Run the loop on a background thread."""
        self.trigger()

        self._thread = threading.Thread(target=self.run, daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop, cancelling any pass that is in progress."""
        self._cancel.cancel()
        self._queue.put(None)

        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> None:
        """Run passes until the loop is stopped."""
        while not self._cancel.cancelled:
            try:
                index = self._queue.get(timeout=self._next_timeout())
            except queue.Empty:
                index = None

            due = self._due()

            if index is not None and index not in due:
                due.append(index)

            for i in due:
                if self._cancel.cancelled:
                    break

                self.run_pass(i)

        log.debug("reconcile loop stopped")

    def run_pass(self, index: int) -> ReconcileResult:
        """Run a single pass of a reconciler and schedule its requeue."""
        with self._lock:
            self._pending.discard(index)
            self._deadlines.pop(index, None)

        result = self.reconcilers[index].reconcile(self._cancel)

        if result.requeue_after is not None:
            with self._lock:
                self._deadlines[index] = time.monotonic() + result.requeue_after

        return result

    def converge(self, max_passes: int = 100) -> bool:
        """
        Run passes of every reconciler until none of them changes anything.

        Returns False if that didn't happen within the maximum number of passes, or if
        the last pass of any reconciler failed.
        """
        settled = True

        for index in range(len(self.reconcilers)):
            for _ in range(max_passes):
                result = self.run_pass(index)

                if not result.mutated:
                    settled = settled and not result.errors
                    break
            else:
                log.error(f"reconciler {index} did not settle in {max_passes} passes")
                settled = False

        return settled

    def _next_timeout(self) -> Optional[float]:
        with self._lock:
            if not self._deadlines:
                return None

            return max(0.0, min(self._deadlines.values()) - time.monotonic())

    def _due(self) -> List[int]:
        """Return the reconcilers whose requeue delay has expired."""
        now = time.monotonic()

        with self._lock:
            return sorted(i for i, t in self._deadlines.items() if t <= now)
