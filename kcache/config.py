"""Module for configuration variables with defaults that are overridable by a file."""

from __future__ import annotations

from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
import os
import platform

from kcache.constants import (
    DEFAULT_CACHE_DIR,
    DEFAULT_EXTRACTOR,
    DEFAULT_USAGE_DIR,
    EXTRACT_TIMEOUT,
    RETRY_FAILURE,
    RETRY_STATUS_UPDATE,
    USAGE_POLL,
)
from kcache.logger import log


def _default_node_name() -> str:
    return os.environ.get("NODE_NAME") or platform.node()


@dataclass
class DatabaseConfig:
    """Configuration variables related to the on-disk databases."""

    cache_path: str = DEFAULT_CACHE_DIR
    usage_path: str = DEFAULT_USAGE_DIR

    @staticmethod
    def load(section: SectionProxy) -> DatabaseConfig:
        """Load overridden variables from a section within a config file."""
        config = DatabaseConfig()

        config.cache_path = os.path.expanduser(
            section.get("cache_path", fallback=config.cache_path)
        )
        config.usage_path = os.path.expanduser(
            section.get("usage_path", fallback=config.usage_path)
        )

        return config


@dataclass
class AgentConfig:
    """Configuration variables related to the reconciliation of caches on a node."""

    node_name: str = field(default_factory=_default_node_name)
    no_gpu: bool = False

    extractor: str = DEFAULT_EXTRACTOR
    extract_timeout: float = EXTRACT_TIMEOUT

    # Requeue delays in seconds
    retry_failure: float = RETRY_FAILURE
    retry_status_update: float = RETRY_STATUS_UPDATE
    usage_poll: float = USAGE_POLL

    @staticmethod
    def load(section: SectionProxy) -> AgentConfig:
        """Load overridden variables from a section within a config file."""
        config = AgentConfig()

        config.node_name = section.get("node_name", fallback=config.node_name)
        config.no_gpu = section.getboolean("no_gpu", fallback=config.no_gpu)

        config.extractor = section.get("extractor", fallback=config.extractor)
        config.extract_timeout = section.getfloat(
            "extract_timeout", fallback=config.extract_timeout
        )

        config.retry_failure = section.getfloat(
            "retry_failure", fallback=config.retry_failure
        )
        config.retry_status_update = section.getfloat(
            "retry_status_update", fallback=config.retry_status_update
        )
        config.usage_poll = section.getfloat("usage_poll", fallback=config.usage_poll)

        return config


@dataclass
class Config:
    """Configuration variables."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)

    @staticmethod
    def load(filename: str) -> Config:
        """Load overridden configuration variables from a config file."""
        parser = ConfigParser()

        config = Config()

        try:
            with open(filename, "r") as f:
                parser.read_string(f.read(), filename)

            if "database" in parser:
                config.database = DatabaseConfig.load(parser["database"])
            if "agent" in parser:
                config.agent = AgentConfig.load(parser["agent"])
        except FileNotFoundError:
            log.info(f"no config file at {filename}")
        except Exception as e:
            # An unreadable config file is not considered a fatal error since we can
            # fall back to defaults.
            log.error(f"failed to read config file {filename}: {e}")
        else:
            log.info(f"loaded config: {config}")

        return config
