"""Pytest configuration and shared fixtures."""

import pytest

from sidecar import workspace
from sidecar.process import ProcessSupervisor
from sidecar.state.notifications import NotificationBus
from sidecar.testing.fixtures import HashEmbedder, make_settings, make_test_engine
from sidecar.tools.registry import Dispatcher, ToolRegistry


@pytest.fixture
def workspace_root(tmp_path, monkeypatch):
    """A fresh workspace directory, set as the session's workspace root.

    Kept apart from ``tmp_path / "index"`` so indexing never walks the store.
    """
    root = tmp_path / "workspace"
    root.mkdir()
    monkeypatch.setattr(workspace, "_workspace_root", root.resolve())
    return root.resolve()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def embedder():
    return HashEmbedder()


@pytest.fixture
def supervisor():
    sup = ProcessSupervisor(max_output_bytes=64_000, grace_period=0.5)
    yield sup
    sup.terminate_all()


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def dispatcher(registry, bus):
    """Dispatcher over the (initially empty) ``registry`` fixture."""
    return Dispatcher(registry, default_timeout=5.0, cancel_grace=0.5, bus=bus)


@pytest.fixture
def engine(tmp_path, workspace_root, bus, embedder):
    """RagEngine with a ``workspace`` collection rooted at ``workspace_root``."""
    eng = make_test_engine(tmp_path, workspace=workspace_root, bus=bus, embedder=embedder)
    yield eng
    eng.indexer.cancel_all()
