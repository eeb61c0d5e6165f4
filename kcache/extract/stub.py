"""Unpack primitive for nodes without GPUs, used for development and testing."""

import os
from typing import Iterable, List, Tuple

from kcache.cancel import CancelToken
from kcache.logger import log
from .base import ExtractionCancelled, ExtractionError, Extractor, ExtractResult


class StubExtractor(Extractor):
    """
    Fake unpack primitive that writes a small, fixed kernel cache tree.

    The tree resembles the output of a Triton compilation cache. Stubbed GPU 0 is
    reported as compatible and stubbed GPUs 1 and 2 as incompatible.
    """

    SAMPLE_FILES: Tuple[Tuple[str, str], ...] = (
        ("CETLGDE7YAKGU4FRJ26IM6S47TFSIUU7KWBWDR3H2K3QRNRABUCA", "__triton_launcher.so"),
        ("CHN6BLIJ7AJJRKY2IETERW2O7JXTFBUD3PH2WE3USNVKZEKXG64Q", "hip_utils.so"),
        ("MCELTMXFCSPAMZYLZ3C3WPPYYVTVR4QOYNE52X3X6FIH7Z6N6X5A", "__grp__add_kernel.json"),
        ("MCELTMXFCSPAMZYLZ3C3WPPYYVTVR4QOYNE52X3X6FIH7Z6N6X5A", "add_kernel.amdgcn"),
    )

    def __init__(
        self,
        compatible_ids: Iterable[int] = (0,),
        incompatible_ids: Iterable[int] = (1, 2),
        fail_images: Iterable[str] = (),
    ):
        """
        Instantiate a stub reporting the given device ids.

        Image references containing any of the fail_images substrings fail to unpack.
        """
        self._compatible_ids: List[int] = list(compatible_ids)
        self._incompatible_ids: List[int] = list(incompatible_ids)
        self._fail_images = list(fail_images)

    def extract(self, image: str, target_dir: str, cancel: CancelToken) -> ExtractResult:
        """Write the sample tree, checking for cancellation before every file."""
        if any(marker in image for marker in self._fail_images):
            raise ExtractionError(f"unable to pull image {image}")

        for subdir, filename in self.SAMPLE_FILES:
            if cancel.cancelled:
                raise ExtractionCancelled(f"unpacking of {image} was cancelled")

            dirpath = os.path.join(target_dir, subdir)
            os.makedirs(dirpath, exist_ok=True)

            with open(os.path.join(dirpath, filename), "w") as f:
                f.write(f"{image}\n")

        log.debug(f"stubbed unpacking of {image} into {target_dir}")

        return ExtractResult(
            compatible_ids=list(self._compatible_ids),
            incompatible_ids=list(self._incompatible_ids),
        )
