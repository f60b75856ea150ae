"""
Pytest configuration and shared fixtures.

Provides an in-memory store, a scriptable fake remote authority, a
controllable clock, and ready-wired queues and engines.
"""

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from tasksync.core.broadcast import BroadcastHub, CrossTabBroadcaster
from tasksync.core.config import SyncConfig, clear_cache
from tasksync.core.engine import SyncEngine
from tasksync.core.entities import EntityKind
from tasksync.core.store import LocalStore
from tasksync.core.sync import ConnectivitySnapshot, MutationQueue, RetryPolicy

# ==============================================================================
# Fakes
# ==============================================================================


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeRemote:
    """
    In-memory remote authority.

    Every ``send`` is recorded. Responses come from scripted rules (first
    match wins, each used ``times`` times); without a rule the fake behaves
    like a well-mannered API: POST to a collection assigns the next id, PUT
    echoes the patch, PATCH and DELETE return nothing, a manual-order POST returns the
    updated list.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any] | None]] = []
        self.fetches: list[EntityKind] = []
        self.collections: dict[EntityKind, list[dict[str, Any]]] = {}
        self.gate: asyncio.Event | None = None
        self._rules: list[list[Any]] = []
        self._next_id = 100

    def respond(self, method: str, path_prefix: str, result: Any, *, times: int = 1) -> None:
        """Script the answer (a body dict or an exception to raise) for matching sends."""
        self._rules.append([method.upper(), path_prefix, result, times])

    def _match(self, method: str, path: str) -> Any:
        for rule in self._rules:
            rule_method, prefix, result, times = rule
            if rule_method == method and path.startswith(prefix) and times > 0:
                rule[3] = times - 1
                return rule
        return None

    async def fetch_collection(self, kind: EntityKind) -> list[dict[str, Any]]:
        self.fetches.append(kind)
        return copy.deepcopy(self.collections.get(kind, []))

    async def send(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self.sent.append((method, path, copy.deepcopy(payload)))
        if self.gate is not None:
            await self.gate.wait()

        rule = self._match(method, path)
        if rule is not None:
            result = rule[2]
            if isinstance(result, Exception):
                raise result
            return copy.deepcopy(result)

        segments = path.strip("/").split("/")
        if path.endswith("/manual-order"):
            return {"id": segments[-2], "manualSortOrder": list((payload or {})["order"])}
        if method == "POST":
            kind = "list" if segments[-1] == "lists" else segments[-1].rstrip("s")
            self._next_id += 1
            return {**(payload or {}), "id": f"{kind}-{self._next_id}"}
        if method == "PUT":
            return {**(payload or {}), "id": segments[-1]}
        return {}

    def paths(self, method: str | None = None) -> list[str]:
        return [path for m, path, _ in self.sent if method is None or m == method]


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Keep tests away from the real user config and env."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for name in (
        "TASKSYNC_API_URL",
        "TASKSYNC_API_TOKEN",
        "TASKSYNC_USER_ID",
        "TASKSYNC_DB_PATH",
        "TASKSYNC_MAX_RETRIES",
        "TASKSYNC_RESYNC_QUIET_PERIOD",
    ):
        monkeypatch.delenv(name, raising=False)
    clear_cache()
    yield
    clear_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def connectivity():
    return ConnectivitySnapshot()


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.fixture
def store():
    local = LocalStore()
    yield local
    local.close()


@pytest.fixture
def queue(store, remote, connectivity, clock):
    return MutationQueue(store, remote, connectivity, RetryPolicy(), clock=clock)


@pytest.fixture
def config():
    config = SyncConfig()
    config.remote.user_id = "user-1"
    config.events.resync_quiet_period = 0.05
    return config


@pytest.fixture
def make_engine(tmp_path, remote, clock, config, hub):
    """
    Build engines ("tabs") sharing one SQLite file and one broadcast hub.

    Each call returns a new tab with its own connectivity flag and broadcaster.
    """
    db_path = tmp_path / "store.db"
    created: list[tuple[SyncEngine, LocalStore]] = []

    def factory(*, offline: bool = False, tab_id: str | None = None) -> SyncEngine:
        broadcaster = CrossTabBroadcaster(hub, tab_id=tab_id or f"tab-{len(created) + 1}")
        local = LocalStore(db_path, broadcaster=broadcaster)
        engine = SyncEngine(
            local,
            remote,
            ConnectivitySnapshot(offline=offline),
            config,
            clock=clock,
        )
        created.append((engine, local))
        return engine

    yield factory
    for _, local in created:
        if local.broadcaster is not None:
            local.broadcaster.close()
        local.close()


@pytest.fixture
def engine(make_engine):
    return make_engine()
