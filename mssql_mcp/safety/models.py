"""Safety models for the MSSQL MCP Server.

This module defines data models for safety-critical operations including
operation classification, confirmation tokens, flow outcomes and audit
trail records.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class OperationKind(str, Enum):
    """Categories of database actions a tool can request."""

    DROP = "DROP"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    INSERT = "INSERT"
    EXEC = "EXEC"
    READ = "READ"


class Severity(str, Enum):
    """Risk ordinal assigned to an operation kind."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    SAFE = "SAFE"

    @property
    def rank(self) -> int:
        """Numeric risk rank, higher is riskier."""
        return _SEVERITY_RANKS[self]


_SEVERITY_RANKS = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.SAFE: 0,
}


class SafetyPolicy(BaseModel):
    """Process-wide safety configuration, immutable after startup."""

    model_config = ConfigDict(frozen=True)

    allow_dangerous_operations: bool = Field(
        False, description="Allow DROP operations (forbidden by default)"
    )
    require_approval_for_create: bool = Field(
        False, description="Block CREATE operations until policy changes"
    )
    require_approval_for_update: bool = Field(
        False, description="Block UPDATE operations until policy changes"
    )
    require_approval_for_delete: bool = Field(
        False, description="Block DELETE operations until policy changes"
    )
    require_approval_for_insert: bool = Field(
        False, description="Block INSERT operations until policy changes"
    )
    allow_exec_procedure: bool = Field(
        False, description="Allow stored procedure execution"
    )
    enable_dry_run: bool = Field(
        False, description="Preview destructive operations before executing"
    )
    confirmation_ttl_seconds: int = Field(
        300, gt=0, description="Lifetime of dry-run confirmation tokens"
    )


class PendingConfirmation(BaseModel):
    """A dry-run preview awaiting confirmation."""

    token: str = Field(..., description="Opaque confirmation token")
    operation_kind: str = Field(..., description="Operation kind being confirmed")
    target: str = Field(..., description="Object the operation acts on")
    query_hash: str = Field(..., description="SHA-256 of the previewed query")
    params_hash: str = Field(
        ..., description="SHA-256 of the canonical previewed parameters"
    )
    created_at: float = Field(..., description="Creation time on the store clock")
    used: bool = Field(False, description="Whether the token has been consumed")


class ValidationResult(BaseModel):
    """Outcome of validating a confirmation token."""

    valid: bool
    reason: Optional[str] = None
    error_code: Optional[str] = None


class AuditRecord(BaseModel):
    """Append-only record of an attempted destructive operation."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        description="When the operation was attempted",
    )
    operation_type: str = Field(..., description="Operation kind")
    target: str = Field(..., description="Object the operation acted on")
    query: str = Field(..., description="SQL text or procedure call description")
    severity: Severity = Field(..., description="Severity of the operation kind")
    dry_run: bool = Field(..., description="Whether this was a preview")
    success: bool = Field(..., description="Whether the attempt succeeded")
    error: Optional[str] = Field(None, description="Raw error detail on failure")


class FlowMode(str, Enum):
    """Terminal states of the per-call request flow."""

    FORBIDDEN = "forbidden"
    APPROVAL_REQUIRED = "approval_required"
    PREVIEW = "preview"
    DECLINED = "declined"
    CONFIRMATION_FAILED = "confirmation_failed"
    EXECUTED = "executed"
    ERROR = "error"


class OperationResult(BaseModel):
    """Structured result returned to the calling tool."""

    mode: FlowMode
    success: bool
    message: str
    dry_run: Optional[bool] = None
    confirm_token: Optional[str] = None
    rows_affected: Optional[int] = None
    recordsets: Optional[List[List[Dict[str, Any]]]] = None
    warnings: Optional[List[str]] = None
    error_code: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        """Serialize for the MCP transport, dropping unset fields."""
        return self.model_dump(mode="json", exclude_none=True)
