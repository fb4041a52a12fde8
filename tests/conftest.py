from __future__ import annotations

import pytest

from datamover.common.config import Settings, get_settings
from datamover.domain.location import Location
from tests.services.mock_store import MockObjectStoreClient


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()  # type: ignore[attr-defined]
    yield
    get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture()
def settings() -> Settings:
    return Settings(RANGE_CHUNK_SIZE=8)


@pytest.fixture()
def location() -> Location:
    return Location(
        endpoint="http://localhost:9000",
        access_key="access",
        secret_key="secret",
        bucket="test-bucket",
    )


@pytest.fixture()
def store() -> MockObjectStoreClient:
    return MockObjectStoreClient()
