"""In-memory confirmation tokens for the dry-run confirmation flow.

When dry-run mode is enabled, destructive operations return a preview plus
a confirmation token. Re-invoking the same tool with the token executes the
operation. Tokens are single-use, time-limited and bound to the hashes of
the exact query and parameters that produced the preview.

Tokens are never persisted: a process restart invalidates every pending
confirmation.
"""

import hashlib
import json
import threading
import time
import uuid
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

import structlog

from .models import OperationKind, PendingConfirmation, ValidationResult

logger = structlog.get_logger(__name__)


def _sort_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _sort_keys(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_sort_keys(item) for item in value]
    return value


def canonical_stringify(value: Any) -> str:
    """Serialize with every mapping's keys sorted, recursively.

    ``{"a": 1, "b": 2}`` and ``{"b": 2, "a": 1}`` produce the same string.
    """
    return json.dumps(
        _sort_keys(value), separators=(",", ":"), ensure_ascii=False, default=str
    )


def _hash_string(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class ConfirmationStore:
    """Issues, validates and expires single-use confirmation tokens."""

    DEFAULT_TTL_SECONDS = 300
    MAX_PENDING = 100
    MAX_CONSUMED_HISTORY = 1000

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_pending: int = MAX_PENDING,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the confirmation store.

        Args:
            ttl_seconds: Token lifetime, defaults to five minutes
            max_pending: Capacity ceiling for unconfirmed tokens
            clock: Monotonic time source, replaceable in tests
        """
        self.ttl_seconds = (
            self.DEFAULT_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        )
        self.max_pending = max_pending
        self._clock = clock
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._lock = threading.Lock()
        self._pending: Dict[str, PendingConfirmation] = {}
        # Recently consumed tokens, so replays report "already used"
        self._consumed: "OrderedDict[str, None]" = OrderedDict()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def create(
        self,
        operation_kind: OperationKind,
        target: str,
        query: str,
        params: Any,
    ) -> str:
        """Create a pending confirmation and return its token.

        Args:
            operation_kind: Kind of operation being previewed
            target: Object the operation acts on
            query: Exact query text shown in the preview
            params: Parameters the token is bound to

        Returns:
            Confirmation token
        """
        token = str(uuid.uuid4())
        kind = (
            operation_kind.value
            if isinstance(operation_kind, OperationKind)
            else str(operation_kind)
        )

        with self._lock:
            self._cleanup_locked()
            self._pending[token] = PendingConfirmation(
                token=token,
                operation_kind=kind,
                target=target,
                query_hash=_hash_string(query),
                params_hash=_hash_string(canonical_stringify(params)),
                created_at=self._clock(),
                used=False,
            )
            self._evict_overflow_locked()

        self.logger.info(
            "Confirmation token issued",
            token=token,
            operation_kind=kind,
            target=target,
        )
        return token

    def validate(self, token: str, query: str, params: Any) -> ValidationResult:
        """Validate a token against the supplied query and parameters.

        The token is removed whatever the outcome: success consumes it and
        a failed confirmation needs a fresh preview.

        Args:
            token: Confirmation token from a preview
            query: Query text about to be executed
            params: Parameters about to be executed

        Returns:
            ValidationResult with a reason on failure
        """
        with self._lock:
            entry = self._pending.pop(token, None)
            if entry is None:
                if token in self._consumed:
                    result = ValidationResult(
                        valid=False,
                        reason="Token has already been used.",
                        error_code="TOKEN_ALREADY_USED",
                    )
                else:
                    result = ValidationResult(
                        valid=False,
                        reason="Token not found or already expired.",
                        error_code="TOKEN_NOT_FOUND",
                    )
            elif self._clock() - entry.created_at > self.ttl_seconds:
                result = ValidationResult(
                    valid=False,
                    reason="Token has expired.",
                    error_code="TOKEN_EXPIRED",
                )
            elif _hash_string(query) != entry.query_hash:
                result = ValidationResult(
                    valid=False,
                    reason="Query does not match the original preview.",
                    error_code="QUERY_MISMATCH",
                )
            elif _hash_string(canonical_stringify(params)) != entry.params_hash:
                result = ValidationResult(
                    valid=False,
                    reason="Parameters do not match the original preview.",
                    error_code="PARAMS_MISMATCH",
                )
            else:
                entry.used = True
                self._remember_consumed_locked(token)
                result = ValidationResult(valid=True)

        if result.valid:
            self.logger.info("Confirmation token consumed", token=token)
        else:
            self.logger.warning(
                "Confirmation token rejected",
                token=token,
                error_code=result.error_code,
            )
        return result

    def clear(self) -> None:
        """Drop every pending and consumed token."""
        with self._lock:
            self._pending.clear()
            self._consumed.clear()

    def _remember_consumed_locked(self, token: str) -> None:
        self._consumed[token] = None
        while len(self._consumed) > self.MAX_CONSUMED_HISTORY:
            self._consumed.popitem(last=False)

    def _cleanup_locked(self) -> None:
        now = self._clock()
        expired = [
            token
            for token, entry in self._pending.items()
            if now - entry.created_at > self.ttl_seconds
        ]
        for token in expired:
            del self._pending[token]

        if expired:
            self.logger.info("Cleaned up expired tokens", count=len(expired))

    def _evict_overflow_locked(self) -> None:
        excess = len(self._pending) - self.max_pending
        if excess <= 0:
            return

        oldest = sorted(self._pending.values(), key=lambda entry: entry.created_at)
        for entry in oldest[:excess]:
            del self._pending[entry.token]

        self.logger.warning(
            "Evicted oldest pending confirmations", count=excess
        )
