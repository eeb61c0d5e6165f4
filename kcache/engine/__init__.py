from .reconciler import (
    DeclarationPhase,
    InvariantError,
    NodeReconciler,
    ReconcileResult,
    RecordPhase,
)
from .runner import ReconcileLoop
from .scope import ClusterScope, NamespaceScope, Scope

__all__ = [
    "ClusterScope",
    "DeclarationPhase",
    "InvariantError",
    "NamespaceScope",
    "NodeReconciler",
    "ReconcileLoop",
    "ReconcileResult",
    "RecordPhase",
    "Scope",
]
