"""
Adapters around the external primitive that unpacks a kernel cache image.

Unpacking is treated as a pure function: given an image reference that is pinned to a
digest and a target directory, it either fails or fills the directory with the cache
contents and reports which of the node's GPUs the cache is compatible with. Pulling
the image and verifying its signature are the responsibility of the primitive and of
the admission step before it, respectively.
"""

from .base import ExtractionCancelled, ExtractionError, Extractor, ExtractResult
from .command import CommandExtractor
from .stub import StubExtractor

__all__ = [
    "ExtractionCancelled",
    "ExtractionError",
    "Extractor",
    "ExtractResult",
    "CommandExtractor",
    "StubExtractor",
]
