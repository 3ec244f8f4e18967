"""Test configuration and fixtures."""

import os

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from tests.helpers import FakeRegistry, make_layer_tar


@pytest_asyncio.fixture
async def fake_registry():
    """Start an in-process registry with a token service."""
    registry = FakeRegistry()
    server = TestServer(registry.create_app())
    await server.start_server()
    registry.server = server
    try:
        yield registry
    finally:
        await server.close()


@pytest.fixture
def alpine_layers():
    """Two small layers standing in for library/alpine."""
    return [
        make_layer_tar({"etc/alpine-release": b"3.19.0\n"}),
        make_layer_tar({"bin/busybox": b"\x7fELF busybox"}),
    ]


@pytest.fixture
def download_dir(tmp_path):
    path = tmp_path / "downloads"
    path.mkdir()
    return path


# Pytest configuration
def pytest_configure(config):
    """Configure pytest markers and settings."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test requiring a live registry"
    )
    config.addinivalue_line("markers", "unit: mark test as unit test (default)")


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless a live registry is reachable."""
    skip_integration = pytest.mark.skip(reason="Registry not available")

    for item in items:
        if (
            "integration" in item.keywords
            and os.getenv("REGISTRY_AVAILABLE", "false").lower() != "true"
        ):
            item.add_marker(skip_integration)
