"""Module defining the command-line arguments and providing a parser for them."""

from __future__ import annotations

import argparse
from typing import List, Optional

from kcache.constants import LAYOUT_VERSION, VERSION


class Arguments(argparse.Namespace):
    """Parsed command-line arguments."""

    declarations: str

    config: str

    node: Optional[str]
    cache_path: Optional[str]
    usage_path: Optional[str]

    debug: bool
    once: bool
    no_gpu: bool
    max_passes: int

    @classmethod
    def parse(cls, args: Optional[List[str]] = None) -> Arguments:
        """
        Parse command-line arguments from the given list of strings.

        Defaults to sys.argv if none are specified.
        """
        return cls._get_parser().parse_args(args, namespace=cls())

    @classmethod
    def _get_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Extract and garbage collect GPU kernel caches on this node.",
            usage="kcache [option...] declarations",
        )

        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {VERSION} (database layout {LAYOUT_VERSION})",
            help="show the program version and database layout version",
        )

        # Primary arguments
        parser.add_argument(
            "declarations",
            type=str,
            help="JSON file with the cache declarations to reconcile",
        )

        # Path to (optional) config file
        parser.add_argument(
            "--config",
            type=str,
            help="path to config file (default is /etc/kcache/config)",
            default="/etc/kcache/config",
        )

        # Overrides of config file settings
        parser.add_argument("--node", type=str, help="name of this node")
        parser.add_argument(
            "--cache-path", type=str, help="root directory of extracted caches"
        )
        parser.add_argument(
            "--usage-path", type=str, help="root directory of cache usage"
        )
        parser.add_argument(
            "--no-gpu",
            action="store_true",
            help="stub out GPU detection and extraction for nodes without GPUs",
        )

        # Enable debug output for development
        parser.add_argument(
            "--debug", action="store_true", help="enable debug information"
        )

        # Reconcile until nothing changes and print the resulting status records
        parser.add_argument(
            "--once",
            action="store_true",
            help="reconcile until settled, print status records and exit",
        )

        parser.add_argument(
            "--max-passes",
            type=cls._parse_passes,
            help="maximum number of passes per scope with --once",
            default=100,
        )

        return parser

    @staticmethod
    def _parse_passes(arg: str) -> int:
        try:
            val = int(arg)
            assert val > 0
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected number > 0")
