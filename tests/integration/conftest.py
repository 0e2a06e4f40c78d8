"""Integration test fixtures for pg-archiver.

These tests require a running PostgreSQL server the test user may
reload, reachable through PG_ARCHIVER_TEST_DSN, e.g.:
    PG_ARCHIVER_TEST_DSN=postgresql://postgres@localhost:5432/postgres
"""

import os

import pytest

PG_ARCHIVER_TEST_DSN = os.environ.get("PG_ARCHIVER_TEST_DSN")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if PG_ARCHIVER_TEST_DSN:
        return
    skip = pytest.mark.skip(reason="PG_ARCHIVER_TEST_DSN is not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def pg_dsn() -> str:
    """Get the test server DSN."""
    assert PG_ARCHIVER_TEST_DSN is not None
    return PG_ARCHIVER_TEST_DSN
