"""Shared test fixtures."""
import functools
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from metalclaim import main
from metalclaim.config import settings
from metalclaim.controller import Controller
from metalclaim.core.host_store import HostStore
from metalclaim.core.models import HostState, Machine, PhysicalHost, RedfishConnection
from metalclaim.core.state_service import StateTransitionGuard
from metalclaim.db.database import create_session_factory, init_db
from metalclaim.redfish.client import POWER_OFF, SystemInfo


@pytest.fixture
async def test_db(tmp_path):
    """Create a file-backed test database and yield its session factory."""
    engine, factory = create_session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'metalclaim.db'}"
    )
    await init_db(engine)

    yield factory

    await engine.dispose()


@pytest.fixture
def store(test_db):
    """Host store on the test database."""
    return HostStore(test_db)


@pytest.fixture
def guard(store):
    """Transition guard without backoff."""
    return StateTransitionGuard(store, max_attempts=3, backoff_seconds=0)


@pytest.fixture
def make_host():
    """Build (unstored) physical hosts."""
    def _make(
        name: str = "host-1",
        state: HostState = HostState.AVAILABLE,
        labels: dict | None = None,
        address: str | None = None,
        **kwargs,
    ) -> PhysicalHost:
        return PhysicalHost(
            name=name,
            state=state,
            labels=labels or {},
            redfish_connection=RedfishConnection(
                address=address or f"bmc-{name}.example.com",
                credentials_secret_ref=f"{name}-bmc",
            ),
            **kwargs,
        )

    return _make


@pytest.fixture
def create_host(store, make_host):
    """Build and store physical hosts."""
    async def _create(name: str = "host-1", **kwargs) -> PhysicalHost:
        return await store.create(make_host(name, **kwargs))

    return _create


@pytest.fixture
def make_machine():
    """Build machines with unique UIDs."""
    def _make(name: str = "machine-1", **kwargs) -> Machine:
        kwargs.setdefault("uid", str(uuid.uuid4()))
        return Machine(name=name, **kwargs)

    return _make


@pytest.fixture
def bmc():
    """Fake Redfish client handed out for every host."""
    client = AsyncMock()
    client.get_power_state = AsyncMock(return_value=POWER_OFF)
    client.get_system_info = AsyncMock(
        return_value=SystemInfo(
            manufacturer="Dell Inc.",
            model="PowerEdge R650",
            serial_number="SN123",
            health="OK",
            power_state=POWER_OFF,
            cpu_cores=32,
            memory_gb=256,
        )
    )
    return client


@pytest.fixture
def client(tmp_path, monkeypatch, bmc):
    """Create test client running the application against a test database."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"
    engine, factory = create_session_factory(url)

    async def init_test_db():
        await init_db(engine)

    async def close_test_db():
        await engine.dispose()

    monkeypatch.setattr(settings.database, "url", url)
    monkeypatch.setattr(settings.recovery, "enabled", False)
    monkeypatch.setattr(settings.queue, "bmc_cooldown_seconds", 0.0)
    monkeypatch.setattr(settings.queue, "poll_interval_seconds", 0.01)
    monkeypatch.setattr(main, "async_session_factory", factory)
    monkeypatch.setattr(main, "init_db", init_test_db)
    monkeypatch.setattr(main, "close_db", close_test_db)
    monkeypatch.setattr(
        main,
        "Controller",
        functools.partial(Controller, client_factory=MagicMock(return_value=bmc)),
    )

    with TestClient(main.app) as client:
        yield client
