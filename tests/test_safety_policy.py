"""Tests for operation classification and safety policy loading."""

import pytest

from mssql_mcp.safety.models import OperationKind, SafetyPolicy, Severity
from mssql_mcp.safety.policy import (
    is_drop_allowed,
    load_safety_policy,
    requires_approval,
    severity_of,
)


class TestSeverity:
    """Test severity classification."""

    @pytest.mark.parametrize(
        "kind,expected",
        [
            (OperationKind.DROP, Severity.CRITICAL),
            (OperationKind.DELETE, Severity.HIGH),
            (OperationKind.CREATE, Severity.HIGH),
            (OperationKind.UPDATE, Severity.MEDIUM),
            (OperationKind.EXEC, Severity.MEDIUM),
            (OperationKind.INSERT, Severity.LOW),
            (OperationKind.READ, Severity.SAFE),
        ],
    )
    def test_known_kinds(self, kind, expected):
        assert severity_of(kind) is expected

    def test_kind_names_are_accepted(self):
        assert severity_of("delete") is Severity.HIGH

    def test_unknown_kind_is_critical(self):
        assert severity_of("TRUNCATE") is Severity.CRITICAL

    def test_rank_ordering(self):
        ranks = [s.rank for s in (Severity.SAFE, Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 5


class TestApproval:
    """Test approval and drop decisions."""

    def test_defaults_require_nothing(self):
        policy = SafetyPolicy()
        for kind in OperationKind:
            if kind is not OperationKind.DROP:
                assert requires_approval(kind, policy) is False

    def test_flags_block_matching_kind_only(self):
        policy = SafetyPolicy(require_approval_for_delete=True)

        assert requires_approval(OperationKind.DELETE, policy) is True
        assert requires_approval(OperationKind.UPDATE, policy) is False
        assert requires_approval(OperationKind.INSERT, policy) is False

    def test_read_and_exec_never_require_approval(self):
        policy = SafetyPolicy(
            require_approval_for_create=True,
            require_approval_for_update=True,
            require_approval_for_delete=True,
            require_approval_for_insert=True,
        )
        assert requires_approval(OperationKind.READ, policy) is False
        assert requires_approval(OperationKind.EXEC, policy) is False

    def test_unknown_kind_requires_approval(self):
        assert requires_approval("MERGE", SafetyPolicy()) is True

    def test_drop_forbidden_by_default(self):
        assert is_drop_allowed(SafetyPolicy()) is False
        assert is_drop_allowed(SafetyPolicy(allow_dangerous_operations=True)) is True

    def test_policy_is_immutable(self):
        policy = SafetyPolicy()
        with pytest.raises(Exception):
            policy.allow_dangerous_operations = True


class TestLoadSafetyPolicy:
    """Test parsing the policy from environment variables."""

    def test_empty_environment_gives_safe_defaults(self):
        policy = load_safety_policy({})

        assert policy.allow_dangerous_operations is False
        assert policy.allow_exec_procedure is False
        assert policy.enable_dry_run is False
        assert policy.confirmation_ttl_seconds == 300

    def test_flags_are_case_insensitive(self):
        policy = load_safety_policy(
            {
                "ALLOW_DANGEROUS_OPERATIONS": "TRUE",
                "ENABLE_DRY_RUN": "True",
                "REQUIRE_APPROVAL_INSERT": "true",
                "ALLOW_EXEC_PROCEDURE": "yes",
            }
        )

        assert policy.allow_dangerous_operations is True
        assert policy.enable_dry_run is True
        assert policy.require_approval_for_insert is True
        # Only "true" enables a flag
        assert policy.allow_exec_procedure is False

    def test_custom_ttl(self):
        assert load_safety_policy({"DRY_RUN_TTL_SECONDS": "60"}).confirmation_ttl_seconds == 60

    @pytest.mark.parametrize("raw", ["abc", "0", "-5"])
    def test_invalid_ttl_falls_back_to_default(self, raw):
        policy = load_safety_policy({"DRY_RUN_TTL_SECONDS": raw})
        assert policy.confirmation_ttl_seconds == 300

    def test_reads_os_environ_by_default(self, monkeypatch):
        monkeypatch.setenv("ALLOW_DANGEROUS_OPERATIONS", "true")
        monkeypatch.delenv("ENABLE_DRY_RUN", raising=False)

        policy = load_safety_policy()

        assert policy.allow_dangerous_operations is True
        assert policy.enable_dry_run is False
