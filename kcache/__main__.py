"""
Module implementing the command-line interface of the kcache node agent.

The node agent extracts the kernel caches that are declared for the cluster or for a
namespace onto the node, reports their state in a status record per scope and removes
them once they are no longer declared and no workload mounts them anymore. Run
standalone, the declarations are read from a file and the cluster state is kept in
memory.
"""

import json
import logging
import signal
import sys
import threading
from typing import List, NoReturn, Optional

from kcache.agent import Agent, load_declarations
from kcache.cluster import InMemoryClusterState
from kcache.config import Config
import kcache.constants as constants
from kcache.logger import log
from .args import Arguments


def main(arguments: Optional[List[str]] = None) -> NoReturn:
    """
    Run the node agent with the given arguments.

    Defaults to parsing command-line arguments from sys.argv if none are specified.
    """
    # Parse command-line arguments.
    args = Arguments.parse(arguments)

    # Configure debug logging.
    if args.debug:
        log.setLevel(logging.DEBUG)
    else:
        log.setLevel(logging.INFO)

    # Load config file and apply command-line overrides.
    config = Config.load(args.config)

    if args.node:
        config.agent.node_name = args.node
    if args.cache_path:
        config.database.cache_path = args.cache_path
    if args.usage_path:
        config.database.usage_path = args.usage_path
    if args.no_gpu:
        config.agent.no_gpu = True

    try:
        exit_code = _run(args, config)
    except KeyboardInterrupt:
        exit_code = 128 + signal.SIGINT
    except Exception as e:
        log.error(f"failed to run node agent: {e}")
        exit_code = constants.KCACHE_ERROR_CODE

    sys.exit(exit_code)


def _run(args: Arguments, config: Config) -> int:
    state = InMemoryClusterState()

    for declaration in load_declarations(args.declarations):
        state.apply_declaration(declaration)

    agent = Agent(config, state)

    if args.once:
        settled = agent.run_once(args.max_passes)

        records = [r.to_json() for r in state.all_status_records()]
        print(json.dumps(records, indent=2, sort_keys=True))

        return 0 if settled else constants.KCACHE_ERROR_CODE

    agent.start()

    try:
        # Run until interrupted
        threading.Event().wait()
    finally:
        agent.stop()

    return 0


if __name__ == "__main__":
    main()
