"""Pytest configuration and shared fixtures for MSSQL MCP Server tests."""

from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Tuple

import pytest

from mssql_mcp.capabilities.detector import (
    CapabilityRegistry,
    detect,
    set_capability_registry,
)
from mssql_mcp.database.client import MockSqlExecutor
from mssql_mcp.safety.audit import AuditLog
from mssql_mcp.safety.confirmation_store import ConfirmationStore
from mssql_mcp.safety.elicitation import ElicitationBridge
from mssql_mcp.safety.gateway import SafetyGateway
from mssql_mcp.safety.models import SafetyPolicy

SQL_SERVER_2014 = "Microsoft SQL Server 2014 (SP3) - 12.0.6024.0 (X64)"
SQL_SERVER_2019 = MockSqlExecutor.DEFAULT_VERSION


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedElicitation:
    """Elicitation transport returning a scripted answer."""

    def __init__(
        self,
        action: str = "accept",
        content: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
    ):
        self.action = action
        self.content = {"approve": True} if content is None else content
        self.error = error
        self.messages: List[str] = []

    async def __call__(self, message: str) -> Tuple[str, Optional[Dict[str, Any]]]:
        self.messages.append(message)
        if self.error is not None:
            raise self.error
        return self.action, self.content


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> ConfirmationStore:
    """Confirmation store driven by the fake clock."""
    return ConfirmationStore(ttl_seconds=300, clock=clock)


@pytest.fixture
def audit_log(tmp_path: Path) -> AuditLog:
    return AuditLog(tmp_path / "logs")


@pytest.fixture
def executor() -> MockSqlExecutor:
    return MockSqlExecutor(rows_affected=3, count_estimate=7)


@pytest.fixture
def dry_run_policy() -> SafetyPolicy:
    """Dry-run on, DROP allowed, nothing blocked."""
    return SafetyPolicy(
        allow_dangerous_operations=True,
        allow_exec_procedure=True,
        enable_dry_run=True,
    )


@pytest.fixture
def direct_policy() -> SafetyPolicy:
    """Dry-run off, DROP allowed."""
    return SafetyPolicy(allow_dangerous_operations=True, allow_exec_procedure=True)


@pytest.fixture
def make_gateway(store: ConfirmationStore, audit_log: AuditLog, executor: MockSqlExecutor):
    """Build a gateway for a given policy over the shared fixtures."""

    def factory(policy: SafetyPolicy) -> SafetyGateway:
        return SafetyGateway(policy, store, audit_log, executor)

    return factory


@pytest.fixture
def approving_bridge() -> ElicitationBridge:
    return ElicitationBridge(ScriptedElicitation("accept", {"approve": True}))


@pytest.fixture
def declining_bridge() -> ElicitationBridge:
    return ElicitationBridge(ScriptedElicitation("decline", {}))


@pytest.fixture(autouse=True)
def capability_registry() -> Generator[CapabilityRegistry, None, None]:
    """Give every test a fresh capability registry holding SQL Server 2019."""
    registry = CapabilityRegistry()
    registry.set(detect(SQL_SERVER_2019))
    previous = set_capability_registry(registry)
    yield registry
    set_capability_registry(previous)
