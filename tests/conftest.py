"""
Cascade Guard - Test Fixtures
=============================

Shared pytest fixtures: manual clock/scheduler, settings, users, policy
stores, and an in-process fake websocket connector.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from cascade_guard.core.audit import InMemoryAuditSink
from cascade_guard.core.clock import ManualClock, ManualScheduler
from cascade_guard.core.config import Settings
from cascade_guard.core.notifications import NotificationCenter
from cascade_guard.core.security.models import UserContext
from cascade_guard.core.security.policy_store import SecurityPolicyStore
from cascade_guard.core.verification.tokens import TokenIssuer


async def settle(rounds: int = 20) -> None:
    """Let background tasks (socket reader, spawned callbacks) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ==========================================================================
# Time
# ==========================================================================

@pytest.fixture
def settings() -> Settings:
    """Defaults, isolated from any local .env file."""
    return Settings(_env_file=None, ENVIRONMENT="test", TOKEN_SECRET="test-secret")


@pytest.fixture
def clock() -> ManualClock:
    """Monday 2024-03-04 12:00 UTC; local time equals UTC."""
    return ManualClock(datetime(2024, 3, 4, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def scheduler(clock: ManualClock) -> ManualScheduler:
    return ManualScheduler(clock)


# ==========================================================================
# Users & Policy
# ==========================================================================

@pytest.fixture
def super_admin() -> UserContext:
    return UserContext(id="root-1", role="super_admin", display_name="Root Admin")


@pytest.fixture
def admin() -> UserContext:
    return UserContext(id="admin-1", role="admin", permissions=frozenset({"bulk_operations"}))


@pytest.fixture
def instructor() -> UserContext:
    return UserContext(
        id="instructor-1",
        role="instructor",
        permissions=frozenset({"delete_student"}),
        allowed_entity_ids=frozenset({"student-1"}),
    )


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink(max_events=500)


@pytest.fixture
def notifications() -> NotificationCenter:
    return NotificationCenter()


@pytest.fixture
def make_store(clock: ManualClock, audit_sink: InMemoryAuditSink, settings: Settings) -> Callable[..., SecurityPolicyStore]:
    def factory(user: UserContext, session_refresher=None) -> SecurityPolicyStore:
        return SecurityPolicyStore.create(
            user,
            clock=clock,
            audit_sink=audit_sink,
            session_refresher=session_refresher,
            settings=settings,
        )

    return factory


@pytest.fixture
def policy_store(make_store, super_admin: UserContext) -> SecurityPolicyStore:
    return make_store(super_admin)


@pytest.fixture
def token_issuer(clock: ManualClock, settings: Settings) -> TokenIssuer:
    return TokenIssuer(clock=clock, settings=settings)


# ==========================================================================
# Fake Websocket
# ==========================================================================

class FakeConnection:
    """Text connection backed by an asyncio.Queue."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self._inbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue()

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionError("connection closed")
        self.sent.append(json.loads(text))

    async def receive(self) -> Optional[str]:
        return await self._inbox.get()

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(None)

    def push(self, message_type: str, data: Optional[Dict[str, Any]] = None, timestamp: Optional[str] = None) -> None:
        envelope: Dict[str, Any] = {"type": message_type, "data": data or {}}
        if timestamp is not None:
            envelope["timestamp"] = timestamp
        self._inbox.put_nowait(json.dumps(envelope))

    def push_raw(self, raw: str) -> None:
        self._inbox.put_nowait(raw)

    def drop(self) -> None:
        """Simulate the server going away."""
        self.closed = True
        self._inbox.put_nowait(None)

    def sent_of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["type"] == message_type]


class FakeConnector:
    """Hands out FakeConnections; `fail_next` makes the next N attempts fail."""

    def __init__(self) -> None:
        self.connections: List[FakeConnection] = []
        self.attempts = 0
        self.fail_next = 0
        self.closed = False

    async def connect(self, url: str, timeout: float) -> FakeConnection:
        self.attempts += 1
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ConnectionError("connection refused")
        connection = FakeConnection()
        self.connections.append(connection)
        return connection

    async def close(self) -> None:
        self.closed = True

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
