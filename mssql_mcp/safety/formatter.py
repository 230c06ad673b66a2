"""Human-readable previews and notices for destructive operations."""

from typing import Optional, Union

from .models import OperationKind, Severity
from .policy import APPROVAL_ENV_FLAGS, coerce_kind, severity_of

RULE = "=" * 60

_SEVERITY_ICONS = {
    Severity.CRITICAL: "🔴",
    Severity.HIGH: "🟠",
    Severity.MEDIUM: "🟡",
    Severity.LOW: "🟢",
    Severity.SAFE: "✅",
}


def severity_icon(severity: Severity) -> str:
    """Get an icon representing the severity level."""
    return _SEVERITY_ICONS.get(severity, "⚠️")


def _kind_label(kind: Union[OperationKind, str]) -> str:
    known = coerce_kind(kind)
    return known.value if known else str(kind).upper()


def format_preview(
    kind: Union[OperationKind, str],
    target: str,
    query: str,
    impact: Optional[str] = None,
    confirm_token: Optional[str] = None,
) -> str:
    """Generate a dry-run preview.

    With a confirmation token the preview tells the caller to re-invoke the
    tool with it; without one it points at the dry-run setting instead.
    """
    severity = severity_of(kind)
    lines = [
        f"{severity_icon(severity)} DRY RUN PREVIEW - {severity.value} OPERATION",
        RULE,
        "",
        f"Operation Type: {_kind_label(kind)}",
        f"Target: {target}",
        "",
        "SQL Query:",
        query,
        "",
    ]

    if impact:
        lines.extend(["Estimated Impact:", impact, ""])

    lines.extend(
        [
            RULE,
            "⚠️  This is a DRY RUN. No changes have been made to the database.",
        ]
    )

    if confirm_token:
        lines.append(
            "To execute this operation, call the same tool again with "
            f'"confirm_token": "{confirm_token}"'
        )
    else:
        lines.append("To execute this operation, set ENABLE_DRY_RUN=false")

    return "\n".join(lines) + "\n"


def format_forbidden(target: str, query: str) -> str:
    """Generate the notice for a DROP refused by policy."""
    lines = [
        "🔴 DANGEROUS OPERATION FORBIDDEN",
        RULE,
        "",
        "DROP operations are FORBIDDEN by default for safety.",
        "",
        "Operation Type: DROP",
        f"Target: {target}",
        "",
        "SQL Query:",
        query,
        "",
        RULE,
        "⚠️  DROP operations permanently delete tables/indexes.",
        "",
        "To enable DROP operations:",
        "1. Set ALLOW_DANGEROUS_OPERATIONS=true in your configuration",
        "2. Use ENABLE_DRY_RUN=true to preview DROP operations before executing",
        "",
        "⛔ WARNING: Enabling dangerous operations can lead to permanent data loss!",
    ]
    return "\n".join(lines) + "\n"


def format_approval_required(
    kind: Union[OperationKind, str], target: str, query: str
) -> str:
    """Generate the notice for an operation blocked pending approval."""
    severity = severity_of(kind)
    label = _kind_label(kind)
    lines = [
        f"{severity_icon(severity)} APPROVAL REQUIRED - {severity.value} OPERATION",
        RULE,
        "",
        f"This {label} operation requires explicit approval.",
        "",
        f"Operation Type: {label}",
        f"Target: {target}",
        "",
        "SQL Query:",
        query,
        "",
        RULE,
        "To allow this operation, update your environment variables:",
        "",
    ]

    known = coerce_kind(kind)
    if known in APPROVAL_ENV_FLAGS:
        lines.append(f"Set {APPROVAL_ENV_FLAGS[known]}=false (currently set to true)")
    elif known is OperationKind.EXEC:
        lines.append(
            "Set ALLOW_EXEC_PROCEDURE=true to enable stored procedure execution"
        )
    else:
        lines.append(f"No setting allows {label} operations.")

    lines.extend(
        [
            "",
            "⚠️  WARNING: Disabling approval checks may lead to unintended data loss.",
        ]
    )
    return "\n".join(lines) + "\n"


def format_exec_disabled(procedure_name: str) -> str:
    """Generate the notice for stored procedure execution being disabled."""
    lines = [
        "⚠️ STORED PROCEDURE EXECUTION DISABLED",
        RULE,
        "",
        "Stored procedure execution is disabled by default for safety.",
        "",
        f"Procedure: {procedure_name}",
        "",
        "To enable stored procedure execution:",
        "Set ALLOW_EXEC_PROCEDURE=true in your environment configuration.",
        "",
        "⚠️ WARNING: Stored procedures can modify data. Enable with caution.",
    ]
    return "\n".join(lines)


def format_elicitation_message(
    kind: Union[OperationKind, str],
    target: str,
    query: str,
    severity: Severity,
    impact: Optional[str] = None,
) -> str:
    """Build the prompt shown to an operator for interactive approval."""
    rule = "=" * 55
    lines = [
        f"{severity_icon(severity)} {severity.value} DATABASE OPERATION - Approval Required",
        rule,
        "",
        f"Operation: {_kind_label(kind)}",
        f"Target:    {target}",
        "",
        "SQL:",
        query,
    ]

    if impact:
        lines.extend(["", "Estimated Impact:", impact])

    lines.extend(
        [
            "",
            rule,
            'Check "approve" to execute this operation, or decline to cancel.',
        ]
    )
    return "\n".join(lines)
