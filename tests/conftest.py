"""Shared pytest fixtures for the bridge tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from helpers import FakeRelay, FakeTransportFactory, MemoryCredentialStore  # noqa: E402


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def credential_store():
    return MemoryCredentialStore()


@pytest.fixture
def relay():
    return FakeRelay()
