"""Module with fixtures shared by the tests of the databases and the engine."""

import pytest

from kcache.database import CacheDatabase, DatabaseLocks, UsageRegistry
from kcache.extract import StubExtractor


@pytest.fixture
def locks():
    return DatabaseLocks()


@pytest.fixture
def usage(tmp_path, locks):
    return UsageRegistry(str(tmp_path / "usage"), locks)


@pytest.fixture
def extractor():
    return StubExtractor(fail_images=["broken"])


@pytest.fixture
def database(tmp_path, extractor, usage, locks):
    return CacheDatabase(str(tmp_path / "caches"), extractor, usage, locks)
