"""Unpack primitive implemented by an external executable."""

import json
import subprocess
from typing import List, Optional

from kcache.cancel import CancelToken
from kcache.constants import DEFAULT_EXTRACTOR
from kcache.logger import log, summarize
from .base import ExtractionCancelled, ExtractionError, Extractor, ExtractResult


class CommandExtractor(Extractor):
    """
    Unpack images by running an external tool.

    The tool is invoked as "<executable> -e -i <image> -d <target dir> [--no-gpu]". If
    the last line it writes to stdout is a JSON object with "matchedIds" and
    "unmatchedIds" lists, then those are reported as the compatible and incompatible
    GPU ids.
    """

    # Interval at which the tool is checked for completion and cancellation
    POLL_INTERVAL = 0.1

    def __init__(self, executable: str = DEFAULT_EXTRACTOR, no_gpu: bool = False):
        """Instantiate the extractor for the given executable."""
        self._executable = executable
        self._no_gpu = no_gpu

    def command(self, image: str, target_dir: str) -> List[str]:
        """Build the command line to unpack an image."""
        cmd = [self._executable, "-e", "-i", image, "-d", target_dir]

        if self._no_gpu:
            cmd.append("--no-gpu")

        return cmd

    def extract(self, image: str, target_dir: str, cancel: CancelToken) -> ExtractResult:
        """Run the tool until it exits or until the token is cancelled."""
        cmd = self.command(image, target_dir)
        log.debug(f"running unpack command {cmd}")

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                universal_newlines=True,
            )
        except OSError as e:
            raise ExtractionError(f"failed to run {self._executable}: {e}")

        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel.cancelled:
                    proc.kill()
                    proc.communicate()
                    raise ExtractionCancelled(f"unpacking of {image} was cancelled")

        if proc.returncode != 0:
            raise ExtractionError(
                f"{self._executable} exited with {proc.returncode}: "
                f"{summarize(stderr.strip())}"
            )

        return self._parse_result(stdout)

    @staticmethod
    def _parse_result(stdout: str) -> ExtractResult:
        """Parse the compatibility report from the output of the tool, if any."""
        lines = stdout.strip().splitlines()
        report: Optional[dict] = None

        if lines:
            try:
                report = json.loads(lines[-1])
            except ValueError:
                report = None

        if not isinstance(report, dict):
            return ExtractResult()

        return ExtractResult(
            compatible_ids=[int(i) for i in report.get("matchedIds") or []],
            incompatible_ids=[int(i) for i in report.get("unmatchedIds") or []],
        )
