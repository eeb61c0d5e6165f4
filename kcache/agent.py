"""
Module that wires the databases, the cluster state and the reconcilers of a node.

The agent runs one reconciler per scope kind over the same cache database, both driven
by a single reconcile loop. In standalone mode the cluster state is kept in memory and
seeded from a file of declarations.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List

from kcache.cluster import CacheDeclaration, ClusterStateApi
from kcache.config import Config
from kcache.database import CacheDatabase, DatabaseLocks, UsageRegistry
from kcache.engine import ClusterScope, NamespaceScope, NodeReconciler, ReconcileLoop
from kcache.extract import CommandExtractor, Extractor, StubExtractor
from kcache.logger import log


def load_declarations(filename: str) -> List[CacheDeclaration]:
    """
    Load cache declarations from a JSON file.

    The file contains a list of objects with a name, an image and optionally a
    namespace, a resolvedDigest and a deleting flag.
    """
    with open(filename, "r") as f:
        objs = json.load(f)

    if not isinstance(objs, list):
        raise ValueError(f"expected a list of declarations in {filename}")

    return [_parse_declaration(obj) for obj in objs]


def _parse_declaration(obj: Dict[str, Any]) -> CacheDeclaration:
    try:
        return CacheDeclaration(
            name=obj["name"],
            namespace=obj.get("namespace", ""),
            image=obj["image"],
            resolved_digest=obj.get("resolvedDigest") or None,
            deleting=bool(obj.get("deleting", False)),
        )
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"invalid declaration {obj!r}: {e}")


class Agent:
    """Node agent reconciling both scope kinds of cache declarations."""

    def __init__(self, config: Config, api: ClusterStateApi) -> None:
        self.config = config
        self.api = api

        self.locks = DatabaseLocks()
        self.usage = UsageRegistry(config.database.usage_path, self.locks)
        self.database = CacheDatabase(
            config.database.cache_path, self._extractor(), self.usage, self.locks
        )

        self.reconcilers = [
            NodeReconciler(
                NamespaceScope(api, config.agent.node_name), self.database, config.agent
            ),
            NodeReconciler(
                ClusterScope(api, config.agent.node_name), self.database, config.agent
            ),
        ]

        self.loop = ReconcileLoop(self.reconcilers)

    def _extractor(self) -> Extractor:
        if self.config.agent.no_gpu:
            log.info("no GPUs, stubbing out cache extraction")
            return StubExtractor()

        return CommandExtractor(self.config.agent.extractor)

    def run_once(self, max_passes: int = 100) -> bool:
        """Reconcile until settled. Returns if that succeeded."""
        return self.loop.converge(max_passes)

    def start(self) -> None:
        """Reconcile in the background, reacting to changes of the cluster state."""
        self.api.watch(self.loop.on_change)
        self.loop.start()

    def stop(self) -> None:
        self.loop.stop()
