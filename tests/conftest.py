"""
Shared pytest configuration and fixtures for all tests.

Integration tests need a PostgreSQL 17 server reachable with the
POSTGRES_* settings from .env; they are skipped when none is available.
"""

import sys
from pathlib import Path

import pytest

# Add project root and this directory to sys.path so tests run without installation
project_root = Path(__file__).parent.parent
tests_root = Path(__file__).parent
for path in (project_root, tests_root):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))


def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: Unit tests - isolated function-level tests")
    config.addinivalue_line("markers", "integration: Integration tests - require a PostgreSQL 17 database")
    config.addinivalue_line("markers", "smoke: Smoke tests - basic functionality checks")
    config.addinivalue_line("markers", "edge_case: Edge case tests - boundary conditions")


@pytest.fixture
def fresh_catalog():
    """Metadata catalog with an empty cache."""
    from bulkmerge.catalog.metadata_catalog import MetadataCatalog
    return MetadataCatalog()


@pytest.fixture
def simple_metadata(fresh_catalog):
    from record_models import SimpleRecord
    return fresh_catalog.get_metadata(SimpleRecord)


@pytest.fixture
def metric_metadata(fresh_catalog):
    from record_models import MetricRecord
    return fresh_catalog.get_metadata(MetricRecord)


@pytest.fixture
def user_metadata(fresh_catalog):
    from record_models import UserRecord
    return fresh_catalog.get_metadata(UserRecord)


@pytest.fixture(scope="session")
def pg_engine():
    """Engine on the configured PostgreSQL 17 database; skips when unavailable."""
    from bulkmerge.utils.database_utils import check_database_available, create_sqlalchemy_engine

    if not check_database_available(timeout=2):
        pytest.skip("PostgreSQL is not available")

    engine = create_sqlalchemy_engine()
    with engine.connect() as connection:
        version = connection.dialect.server_version_info
    if version is None or version[0] < 17:
        engine.dispose()
        pytest.skip(f"PostgreSQL 17 or newer required, found {version}")

    yield engine
    engine.dispose()
