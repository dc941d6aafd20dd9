"""Shared pytest fixtures."""

from collections.abc import AsyncIterator

import pytest
from helpers import FakeBackend, PostsApi, define_posts

from tagquery import Api, create_api


@pytest.fixture
def backend() -> FakeBackend:
    """Create a fresh FakeBackend for each test."""
    return FakeBackend()


@pytest.fixture
async def api(backend: FakeBackend) -> AsyncIterator[Api]:
    """An api over the fake backend, closed after the test."""
    api = create_api(base_query=backend, tag_types=["Post"])
    yield api
    await api.close()


@pytest.fixture
def posts(api: Api) -> PostsApi:
    """The posts endpoints registered on ``api``."""
    return define_posts(api)
