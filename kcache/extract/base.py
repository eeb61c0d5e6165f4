"""Interface of the image unpack primitive."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List

from kcache.cancel import CancelToken


class ExtractionError(Exception):
    """Exception raised when an image could not be unpacked."""


class ExtractionCancelled(ExtractionError):
    """Exception raised when unpacking was abandoned because of cancellation."""


@dataclass
class ExtractResult:
    """Device ids of the node's GPUs that are (in)compatible with an unpacked cache."""

    compatible_ids: List[int] = field(default_factory=list)
    incompatible_ids: List[int] = field(default_factory=list)


class Extractor(ABC):
    """Base class of image unpack primitives."""

    @abstractmethod
    def extract(self, image: str, target_dir: str, cancel: CancelToken) -> ExtractResult:
        """
        Unpack the image into the target directory.

        The image reference is already pinned to a digest. Implementations raise
        ExtractionCancelled as soon as possible after the token is cancelled and
        ExtractionError for any other failure. Cleaning up the target directory after a
        failure is up to the caller.
        """
        raise NotImplementedError()
