"""Tests for the destructive operation request flow."""

import json

import pytest

from mssql_mcp.database.models import DatabaseExecutionError
from mssql_mcp.safety.elicitation import ElicitationBridge
from mssql_mcp.safety.gateway import OperationRequest
from mssql_mcp.safety.models import FlowMode, OperationKind, SafetyPolicy
from tests.conftest import ScriptedElicitation


def _insert_request(**overrides):
    values = dict(
        kind=OperationKind.INSERT,
        target="dbo.Users",
        query="INSERT INTO [dbo].[Users] ([name]) VALUES (@value0_0)",
        params={"value0_0": "Ada"},
        confirmation_params={"table_name": "dbo.Users", "data": {"name": "Ada"}},
        impact="This will insert 1 record(s) into dbo.Users.",
        success_message="Inserted {rows} row(s).",
        failure_message="Failed to insert data into 'dbo.Users'.",
    )
    values.update(overrides)
    return OperationRequest(**values)


def _drop_request():
    return OperationRequest(
        kind=OperationKind.DROP,
        target="dbo.Users",
        query="DROP TABLE [dbo].[Users]",
        confirmation_params={"table_name": "dbo.Users"},
    )


def _audit_entries(audit_log):
    if not audit_log.log_file.exists():
        return []
    return [json.loads(line) for line in audit_log.log_file.read_text().splitlines()]


class TestPolicyChecks:
    """Test forbidden and approval-required outcomes."""

    @pytest.mark.asyncio
    async def test_drop_forbidden_by_default(self, make_gateway, executor, audit_log):
        gateway = make_gateway(SafetyPolicy(enable_dry_run=True))

        result = await gateway.run(_drop_request())

        assert result.mode is FlowMode.FORBIDDEN
        assert result.success is False
        assert result.error_code == "OPERATION_FORBIDDEN"
        assert result.confirm_token is None
        assert "ALLOW_DANGEROUS_OPERATIONS=true" in result.message
        assert executor.executed == []
        assert _audit_entries(audit_log) == []

    @pytest.mark.asyncio
    async def test_drop_forbidden_even_with_token(self, make_gateway, store, executor):
        gateway = make_gateway(SafetyPolicy())
        token = store.create(OperationKind.DROP, "dbo.Users", "DROP TABLE [dbo].[Users]", {"table_name": "dbo.Users"})

        result = await gateway.run(_drop_request(), confirm_token=token)

        assert result.mode is FlowMode.FORBIDDEN
        assert executor.executed == []

    @pytest.mark.asyncio
    async def test_approval_required(self, make_gateway, executor, store, audit_log):
        gateway = make_gateway(SafetyPolicy(require_approval_for_insert=True, enable_dry_run=True))

        result = await gateway.run(_insert_request())

        assert result.mode is FlowMode.APPROVAL_REQUIRED
        assert result.error_code == "APPROVAL_REQUIRED"
        assert "REQUIRE_APPROVAL_INSERT=false" in result.message
        assert store.pending_count == 0
        assert executor.executed == []
        assert _audit_entries(audit_log) == []


class TestTokenFlow:
    """Test preview and confirmation with tokens."""

    @pytest.mark.asyncio
    async def test_preview_then_execute(self, make_gateway, dry_run_policy, executor, audit_log):
        gateway = make_gateway(dry_run_policy)

        preview = await gateway.run(_insert_request())

        assert preview.mode is FlowMode.PREVIEW
        assert preview.success is True
        assert preview.dry_run is True
        assert preview.confirm_token
        assert f'"confirm_token": "{preview.confirm_token}"' in preview.message
        assert "🟢 DRY RUN PREVIEW - LOW OPERATION" in preview.message
        assert executor.executed == []

        executed = await gateway.run(_insert_request(), confirm_token=preview.confirm_token)

        assert executed.mode is FlowMode.EXECUTED
        assert executed.rows_affected == 3
        assert executed.message == "Inserted 3 row(s)."
        assert executor.executed == [
            ("INSERT INTO [dbo].[Users] ([name]) VALUES (@value0_0)", {"value0_0": "Ada"})
        ]

        entries = _audit_entries(audit_log)
        assert [entry["dry_run"] for entry in entries] == [True, False]
        assert all(entry["success"] for entry in entries)
        assert entries[0]["severity"] == "LOW"

    @pytest.mark.asyncio
    async def test_replayed_token(self, make_gateway, dry_run_policy, executor):
        gateway = make_gateway(dry_run_policy)
        token = (await gateway.run(_insert_request())).confirm_token
        await gateway.run(_insert_request(), confirm_token=token)

        replay = await gateway.run(_insert_request(), confirm_token=token)

        assert replay.mode is FlowMode.CONFIRMATION_FAILED
        assert replay.error_code == "TOKEN_ALREADY_USED"
        assert replay.message == "Confirmation failed: Token has already been used."
        assert len(executor.executed) == 1

    @pytest.mark.asyncio
    async def test_token_bound_to_arguments(self, make_gateway, dry_run_policy, executor):
        gateway = make_gateway(dry_run_policy)
        token = (await gateway.run(_insert_request())).confirm_token

        changed = _insert_request(
            confirmation_params={"table_name": "dbo.Users", "data": {"name": "Eve"}}
        )
        result = await gateway.run(changed, confirm_token=token)

        assert result.mode is FlowMode.CONFIRMATION_FAILED
        assert result.error_code == "PARAMS_MISMATCH"
        assert executor.executed == []

    @pytest.mark.asyncio
    async def test_expired_token(self, make_gateway, dry_run_policy, clock, executor):
        gateway = make_gateway(dry_run_policy)
        token = (await gateway.run(_insert_request())).confirm_token

        clock.advance(301)
        result = await gateway.run(_insert_request(), confirm_token=token)

        assert result.error_code == "TOKEN_EXPIRED"
        assert executor.executed == []

    @pytest.mark.asyncio
    async def test_dry_run_disabled_executes_directly(self, make_gateway, direct_policy, executor, store):
        gateway = make_gateway(direct_policy)

        result = await gateway.run(_drop_request())

        assert result.mode is FlowMode.EXECUTED
        assert store.pending_count == 0
        assert executor.executed[0][0] == "DROP TABLE [dbo].[Users]"

    @pytest.mark.asyncio
    async def test_impact_estimator(self, make_gateway, dry_run_policy):
        async def estimate():
            return "Estimated rows affected: 42"

        gateway = make_gateway(dry_run_policy)
        result = await gateway.run(_insert_request(estimate_impact=estimate))

        assert "Estimated rows affected: 42" in result.message

    @pytest.mark.asyncio
    async def test_failing_estimator_uses_static_impact(self, make_gateway, dry_run_policy):
        async def estimate():
            raise RuntimeError("timeout")

        gateway = make_gateway(dry_run_policy)
        result = await gateway.run(_insert_request(estimate_impact=estimate))

        assert result.mode is FlowMode.PREVIEW
        assert "This will insert 1 record(s)" in result.message


class TestInteractiveFlow:
    """Test approval over elicitation."""

    @pytest.mark.asyncio
    async def test_approved_executes(self, make_gateway, dry_run_policy, approving_bridge, executor, store):
        gateway = make_gateway(dry_run_policy)

        result = await gateway.run(_insert_request(), bridge=approving_bridge)

        assert result.mode is FlowMode.EXECUTED
        assert store.pending_count == 0
        assert len(executor.executed) == 1

    @pytest.mark.asyncio
    async def test_declined(self, make_gateway, dry_run_policy, declining_bridge, executor, audit_log):
        gateway = make_gateway(dry_run_policy)

        result = await gateway.run(_insert_request(), bridge=declining_bridge)

        assert result.mode is FlowMode.DECLINED
        assert result.success is True
        assert result.dry_run is True
        assert result.confirm_token is None
        assert result.message.endswith("Operation declined by user.")
        assert executor.executed == []
        assert _audit_entries(audit_log) == []

    @pytest.mark.asyncio
    async def test_channel_failure_falls_back_to_token(self, make_gateway, dry_run_policy, executor, store):
        bridge = ElicitationBridge(ScriptedElicitation(error=ConnectionError("closed")))
        gateway = make_gateway(dry_run_policy)

        result = await gateway.run(_insert_request(), bridge=bridge)

        assert result.mode is FlowMode.PREVIEW
        assert result.confirm_token
        assert store.pending_count == 1
        assert executor.executed == []

    @pytest.mark.asyncio
    async def test_token_takes_precedence_over_bridge(self, make_gateway, dry_run_policy, executor):
        transport = ScriptedElicitation("decline", {})
        gateway = make_gateway(dry_run_policy)
        token = (await gateway.run(_insert_request())).confirm_token

        result = await gateway.run(
            _insert_request(), confirm_token=token, bridge=ElicitationBridge(transport)
        )

        assert result.mode is FlowMode.EXECUTED
        assert transport.messages == []

    @pytest.mark.asyncio
    async def test_bridge_ignored_without_dry_run(self, make_gateway, direct_policy, declining_bridge):
        gateway = make_gateway(direct_policy)

        result = await gateway.run(_insert_request(), bridge=declining_bridge)

        assert result.mode is FlowMode.EXECUTED


class TestExecutionErrors:
    """Test failure reporting."""

    @pytest.mark.asyncio
    async def test_error_is_sanitized_and_audited(self, make_gateway, direct_policy, executor, audit_log):
        async def fail(sql, params=None):
            raise DatabaseExecutionError("Login failed for user 'sa' on db01", query=sql)

        executor.execute = fail
        gateway = make_gateway(direct_policy)

        result = await gateway.run(_insert_request())

        assert result.mode is FlowMode.ERROR
        assert result.success is False
        assert result.error_code == "DATABASE_EXECUTION_ERROR"
        assert result.message == (
            "Failed to insert data into 'dbo.Users'. See the operation log for details."
        )
        assert "Login failed" not in result.message

        entries = _audit_entries(audit_log)
        assert entries[-1]["success"] is False
        assert "Login failed for user 'sa'" in entries[-1]["error"]

    @pytest.mark.asyncio
    async def test_generic_error_code(self, make_gateway, direct_policy, executor):
        async def fail(sql, params=None):
            raise RuntimeError("boom")

        executor.execute = fail
        result = await make_gateway(direct_policy).run(_insert_request())

        assert result.error_code == "EXECUTION_FAILED"

    @pytest.mark.asyncio
    async def test_warnings_appended(self, make_gateway, direct_policy):
        result = await make_gateway(direct_policy).run(
            _insert_request(warnings=["IF EXISTS not supported"])
        )

        assert result.warnings == ["IF EXISTS not supported"]
        assert "⚠️  Warnings:" in result.message
