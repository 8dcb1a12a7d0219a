"""
Shared pytest fixtures for the deployment gateway tests.

The environment is pinned before any application module is imported so the
module-level app never tries to reach Firestore.
"""

import os
from unittest.mock import AsyncMock

import pytest

os.environ["STORE_BACKEND"] = "memory"
os.environ.setdefault("RPC_SECRET", "test-secret-key-64-characters-long-for-testing-purposes")
os.environ.setdefault("NOMAD_URL", "http://test-nomad:4646")

from shipper.config import Config  # noqa: E402
from shipper.engine import DeploymentEngine  # noqa: E402
from shipper.nomad_client import NomadClient  # noqa: E402
from statestore import MemoryRecordStore  # noqa: E402

SECRET = "test-secret-key-64-characters-long-for-testing-purposes"


@pytest.fixture
def store():
    """Empty in-memory record store."""
    return MemoryRecordStore()


@pytest.fixture
def nomad():
    """Nomad client with every network call mocked."""
    return AsyncMock(spec=NomadClient)


@pytest.fixture
def engine(store, nomad):
    return DeploymentEngine(store, nomad, updated_by="shipper")


@pytest.fixture
def config(monkeypatch):
    """Config built from a controlled environment."""
    monkeypatch.setenv("RPC_SECRET", SECRET)
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("NOMAD_URL", "http://test-nomad:4646")
    monkeypatch.setenv("NOMAD_TOKEN", "test-token")
    return Config()
