"""Request flow for destructive operations.

Every destructive tool call passes through SafetyGateway.run():

    forbidden check -> approval check -> dry-run gate
        -> token validation | interactive approval | token issue
        -> execute -> audit

CRITICAL: this is the only path from a tool handler to the executor for
anything other than a read.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..database.client import SqlExecutor
from ..database.models import QueryResult
from .audit import AuditLog
from .confirmation_store import ConfirmationStore
from .elicitation import ElicitationBridge, ElicitationError
from .formatter import format_approval_required, format_forbidden, format_preview
from .models import (
    AuditRecord,
    FlowMode,
    OperationKind,
    OperationResult,
    SafetyPolicy,
)
from .policy import is_drop_allowed, requires_approval, severity_of

logger = structlog.get_logger(__name__)


class OperationRequest(BaseModel):
    """A destructive operation built by a tool handler."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: OperationKind = Field(..., description="Operation kind")
    target: str = Field(..., description="Table, index or procedure acted on")
    query: str = Field(..., description="Query text shown in previews and hashed")
    params: Dict[str, Any] = Field(
        default_factory=dict, description="Bound parameters for execution"
    )
    confirmation_params: Any = Field(
        None, description="Tool arguments a confirmation token is bound to"
    )
    procedure_name: Optional[str] = Field(
        None, description="Execute as a stored procedure call instead of SQL text"
    )
    impact: Optional[str] = Field(None, description="Static impact description")
    estimate_impact: Optional[Callable[[], Awaitable[str]]] = Field(
        None, description="Computes the impact description on demand"
    )
    success_message: str = Field(
        "Operation completed successfully. {rows} row(s) affected.",
        description="Message on success, {rows} is the affected row count",
    )
    failure_message: str = Field(
        "Operation failed.", description="Caller-facing message on failure"
    )
    warnings: List[str] = Field(
        default_factory=list, description="Warnings appended to the result"
    )


class SafetyGateway:
    """Decides whether an operation is forbidden, previewed or executed."""

    def __init__(
        self,
        policy: SafetyPolicy,
        confirmation_store: ConfirmationStore,
        audit_log: AuditLog,
        executor: SqlExecutor,
    ):
        self.policy = policy
        self.confirmation_store = confirmation_store
        self.audit_log = audit_log
        self.executor = executor
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def run(
        self,
        request: OperationRequest,
        confirm_token: Optional[str] = None,
        bridge: Optional[ElicitationBridge] = None,
    ) -> OperationResult:
        """Drive one destructive call to a terminal state.

        Args:
            request: Operation built by the tool handler
            confirm_token: Token from an earlier preview, if any
            bridge: Interactive approval channel, if the client supports it

        Returns:
            OperationResult describing the terminal state
        """
        kind = request.kind
        self.logger.info(
            "Processing operation",
            operation_kind=kind.value,
            target=request.target,
            has_token=confirm_token is not None,
            interactive=bridge is not None,
        )

        if kind is OperationKind.DROP and not is_drop_allowed(self.policy):
            self.logger.warning("DROP forbidden by policy", target=request.target)
            return OperationResult(
                mode=FlowMode.FORBIDDEN,
                success=False,
                message=format_forbidden(request.target, request.query),
                error_code="OPERATION_FORBIDDEN",
            )

        if kind is not OperationKind.DROP and requires_approval(kind, self.policy):
            self.logger.warning(
                "Operation requires approval",
                operation_kind=kind.value,
                target=request.target,
            )
            return OperationResult(
                mode=FlowMode.APPROVAL_REQUIRED,
                success=False,
                message=format_approval_required(kind, request.target, request.query),
                error_code="APPROVAL_REQUIRED",
            )

        if self.policy.enable_dry_run:
            if confirm_token:
                validation = self.confirmation_store.validate(
                    confirm_token, request.query, request.confirmation_params
                )
                if not validation.valid:
                    return OperationResult(
                        mode=FlowMode.CONFIRMATION_FAILED,
                        success=False,
                        message=f"Confirmation failed: {validation.reason}",
                        error_code=validation.error_code,
                    )
            elif bridge is not None:
                impact = await self._resolve_impact(request)
                try:
                    response = await bridge.ask(
                        kind, request.target, request.query, severity_of(kind), impact
                    )
                except ElicitationError as e:
                    self.logger.warning(
                        "Interactive approval failed, falling back to token flow",
                        operation_kind=kind.value,
                        error=e.message,
                        error_code=e.error_code,
                    )
                    return self._issue_preview(request, impact)

                if not response.approved:
                    self.logger.info(
                        "Operation declined by operator",
                        operation_kind=kind.value,
                        target=request.target,
                        action=response.action,
                    )
                    preview = format_preview(kind, request.target, request.query, impact)
                    return OperationResult(
                        mode=FlowMode.DECLINED,
                        success=True,
                        dry_run=True,
                        message=preview + "\nOperation declined by user.",
                    )
            else:
                impact = await self._resolve_impact(request)
                return self._issue_preview(request, impact)

        return await self._execute(request)

    async def _resolve_impact(self, request: OperationRequest) -> Optional[str]:
        if request.estimate_impact is None:
            return request.impact
        try:
            return await request.estimate_impact()
        except Exception as e:
            self.logger.warning(
                "Impact estimation failed", target=request.target, error=str(e)
            )
            return request.impact

    def _issue_preview(
        self, request: OperationRequest, impact: Optional[str]
    ) -> OperationResult:
        token = self.confirmation_store.create(
            request.kind, request.target, request.query, request.confirmation_params
        )
        self._record(request, dry_run=True, success=True)

        return OperationResult(
            mode=FlowMode.PREVIEW,
            success=True,
            dry_run=True,
            confirm_token=token,
            message=format_preview(
                request.kind, request.target, request.query, impact, token
            ),
            warnings=request.warnings or None,
        )

    async def _execute(self, request: OperationRequest) -> OperationResult:
        try:
            if request.procedure_name:
                result = await self.executor.execute_procedure(
                    request.procedure_name, request.params
                )
            else:
                result = await self.executor.execute(request.query, request.params)
        except Exception as e:
            self._record(request, dry_run=False, success=False, error=str(e))
            self.logger.error(
                "Operation failed",
                operation_kind=request.kind.value,
                target=request.target,
                error=str(e),
            )
            return OperationResult(
                mode=FlowMode.ERROR,
                success=False,
                message=f"{request.failure_message} See the operation log for details.",
                error_code=getattr(e, "error_code", "EXECUTION_FAILED"),
            )

        self._record(request, dry_run=False, success=True)
        self.logger.info(
            "Operation executed",
            operation_kind=request.kind.value,
            target=request.target,
            rows_affected=result.total_rows_affected,
        )
        return self._executed_result(request, result)

    def _executed_result(
        self, request: OperationRequest, result: QueryResult
    ) -> OperationResult:
        message = request.success_message.format(rows=result.total_rows_affected)
        if request.warnings:
            message += "\n\n⚠️  Warnings:\n" + "\n".join(
                f"  - {warning}" for warning in request.warnings
            )

        return OperationResult(
            mode=FlowMode.EXECUTED,
            success=True,
            message=message,
            rows_affected=result.total_rows_affected,
            recordsets=result.recordsets or None,
            warnings=request.warnings or None,
        )

    def _record(
        self,
        request: OperationRequest,
        dry_run: bool,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        self.audit_log.record(
            AuditRecord(
                operation_type=request.kind.value,
                target=request.target,
                query=request.query,
                severity=severity_of(request.kind),
                dry_run=dry_run,
                success=success,
                error=error,
            )
        )
