"""Operation classification and safety policy.

Severity and approval lookups fall back to the most restrictive answer for
anything outside the known operation kinds.
"""

import os
from typing import Mapping, Optional, Union

import structlog

from .models import OperationKind, SafetyPolicy, Severity

logger = structlog.get_logger(__name__)

DEFAULT_CONFIRMATION_TTL_SECONDS = 300

_SEVERITY_BY_KIND = {
    OperationKind.DROP: Severity.CRITICAL,
    OperationKind.DELETE: Severity.HIGH,
    OperationKind.CREATE: Severity.HIGH,
    OperationKind.UPDATE: Severity.MEDIUM,
    OperationKind.EXEC: Severity.MEDIUM,
    OperationKind.INSERT: Severity.LOW,
    OperationKind.READ: Severity.SAFE,
}

# Environment variable that must change to lift each approval requirement
APPROVAL_ENV_FLAGS = {
    OperationKind.CREATE: "REQUIRE_APPROVAL_CREATE",
    OperationKind.UPDATE: "REQUIRE_APPROVAL_UPDATE",
    OperationKind.DELETE: "REQUIRE_APPROVAL_DELETE",
    OperationKind.INSERT: "REQUIRE_APPROVAL_INSERT",
}


def coerce_kind(kind: Union[OperationKind, str]) -> Optional[OperationKind]:
    """Map a kind or its name onto OperationKind, None if unknown."""
    if isinstance(kind, OperationKind):
        return kind
    try:
        return OperationKind(str(kind).upper())
    except ValueError:
        return None


def severity_of(kind: Union[OperationKind, str]) -> Severity:
    """Get the severity level for an operation kind."""
    known = coerce_kind(kind)
    if known is None:
        return Severity.CRITICAL
    return _SEVERITY_BY_KIND.get(known, Severity.CRITICAL)


def is_drop_allowed(policy: SafetyPolicy) -> bool:
    """DROP is forbidden unless dangerous operations are explicitly allowed."""
    return policy.allow_dangerous_operations


def requires_approval(kind: Union[OperationKind, str], policy: SafetyPolicy) -> bool:
    """Determine whether an operation kind is blocked pending approval.

    DROP is handled by is_drop_allowed() and EXEC by the
    allow_exec_procedure flag, so neither has an approval knob here.
    """
    known = coerce_kind(kind)
    if known is OperationKind.READ or known is OperationKind.EXEC:
        return False
    if known is OperationKind.CREATE:
        return policy.require_approval_for_create
    if known is OperationKind.UPDATE:
        return policy.require_approval_for_update
    if known is OperationKind.DELETE:
        return policy.require_approval_for_delete
    if known is OperationKind.INSERT:
        return policy.require_approval_for_insert
    return True


def _env_flag(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "false").strip().lower() == "true"


def load_safety_policy(env: Optional[Mapping[str, str]] = None) -> SafetyPolicy:
    """Parse the safety policy from environment variables.

    Args:
        env: Mapping to read from, defaults to os.environ

    Returns:
        Immutable SafetyPolicy
    """
    env = os.environ if env is None else env

    ttl_seconds = DEFAULT_CONFIRMATION_TTL_SECONDS
    raw_ttl = env.get("DRY_RUN_TTL_SECONDS")
    if raw_ttl:
        try:
            ttl_seconds = int(raw_ttl)
            if ttl_seconds <= 0:
                raise ValueError(raw_ttl)
        except ValueError:
            logger.warning(
                "Invalid DRY_RUN_TTL_SECONDS, using default",
                value=raw_ttl,
                default=DEFAULT_CONFIRMATION_TTL_SECONDS,
            )
            ttl_seconds = DEFAULT_CONFIRMATION_TTL_SECONDS

    return SafetyPolicy(
        allow_dangerous_operations=_env_flag(env, "ALLOW_DANGEROUS_OPERATIONS"),
        require_approval_for_create=_env_flag(env, "REQUIRE_APPROVAL_CREATE"),
        require_approval_for_update=_env_flag(env, "REQUIRE_APPROVAL_UPDATE"),
        require_approval_for_delete=_env_flag(env, "REQUIRE_APPROVAL_DELETE"),
        require_approval_for_insert=_env_flag(env, "REQUIRE_APPROVAL_INSERT"),
        allow_exec_procedure=_env_flag(env, "ALLOW_EXEC_PROCEDURE"),
        enable_dry_run=_env_flag(env, "ENABLE_DRY_RUN"),
        confirmation_ttl_seconds=ttl_seconds,
    )
