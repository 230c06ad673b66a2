"""Interactive operator approval over MCP elicitation.

When the connected client advertises the elicitation capability, a
destructive operation can be approved or declined by a human in real time.
Otherwise no bridge exists and the token confirmation flow is used.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, Tuple

import structlog
from pydantic import BaseModel, Field

from .formatter import format_elicitation_message
from .models import OperationKind, Severity

logger = structlog.get_logger(__name__)

DEFAULT_ELICITATION_TIMEOUT_SECONDS = 300.0

# (action, content) as returned by the transport
ElicitFn = Callable[[str], Awaitable[Tuple[str, Optional[Dict[str, Any]]]]]


class ApprovalForm(BaseModel):
    """Form presented to the operator."""

    approve: bool = Field(
        False,
        title="Approve operation",
        description="Check to confirm execution of this database operation.",
    )


class ApprovalResponse(BaseModel):
    """Operator decision for a pending operation."""

    action: Literal["accept", "decline", "cancel"]
    approved: bool = False


class ElicitationError(Exception):
    """Raised when the approval channel fails or returns garbage."""

    def __init__(self, message: str, error_code: str = "ELICITATION_FAILED"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class ElicitationBridge:
    """Asks an operator to accept or decline a pending operation."""

    def __init__(
        self,
        elicit: ElicitFn,
        timeout_seconds: Optional[float] = DEFAULT_ELICITATION_TIMEOUT_SECONDS,
    ):
        """Initialize the bridge.

        Args:
            elicit: Transport call that shows a message and awaits the answer
            timeout_seconds: Upper bound on the wait, None waits forever
        """
        self._elicit = elicit
        self.timeout_seconds = timeout_seconds
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def ask(
        self,
        operation_kind: OperationKind,
        target: str,
        query: str,
        severity: Severity,
        impact: Optional[str] = None,
    ) -> ApprovalResponse:
        """Ask the operator for approval.

        Suspends the calling request until the operator answers.

        Raises:
            ElicitationError: If the channel errors, times out or the
                response is malformed
        """
        message = format_elicitation_message(
            operation_kind, target, query, severity, impact
        )

        self.logger.info(
            "Requesting interactive approval",
            operation_kind=operation_kind,
            target=target,
            severity=severity.value,
        )

        try:
            if self.timeout_seconds:
                action, content = await asyncio.wait_for(
                    self._elicit(message), timeout=self.timeout_seconds
                )
            else:
                action, content = await self._elicit(message)
        except asyncio.TimeoutError as e:
            raise ElicitationError(
                f"No approval response within {self.timeout_seconds} seconds",
                "ELICITATION_TIMEOUT",
            ) from e
        except ElicitationError:
            raise
        except Exception as e:
            raise ElicitationError(f"Elicitation channel failed: {e}") from e

        if action not in ("accept", "decline", "cancel"):
            raise ElicitationError(f"Unexpected elicitation action: {action!r}")

        approved = action == "accept" and bool((content or {}).get("approve"))
        self.logger.info(
            "Interactive approval answered",
            action=action,
            approved=approved,
            target=target,
        )
        return ApprovalResponse(action=action, approved=approved)


def client_supports_elicitation(ctx: Any) -> bool:
    """Check whether the MCP session negotiated the elicitation capability."""
    try:
        client_params = ctx.session.client_params
    except (AttributeError, RuntimeError, ValueError):
        return False

    capabilities = getattr(client_params, "capabilities", None)
    return capabilities is not None and getattr(capabilities, "elicitation", None) is not None


def create_elicitation_bridge(
    ctx: Any,
    timeout_seconds: Optional[float] = DEFAULT_ELICITATION_TIMEOUT_SECONDS,
) -> Optional[ElicitationBridge]:
    """Create a bridge over a fastmcp Context.

    Returns None when there is no context or the client does not support
    elicitation, so callers fall through to the token flow.
    """
    if ctx is None or not client_supports_elicitation(ctx):
        logger.debug("MCP client does not support elicitation, using token flow")
        return None

    async def elicit(message: str) -> Tuple[str, Optional[Dict[str, Any]]]:
        result = await ctx.elicit(message, response_type=ApprovalForm)
        data = getattr(result, "data", None)
        if isinstance(data, BaseModel):
            content: Optional[Dict[str, Any]] = data.model_dump()
        elif isinstance(data, dict):
            content = data
        else:
            content = None
        return result.action, content

    return ElicitationBridge(elicit, timeout_seconds=timeout_seconds)
