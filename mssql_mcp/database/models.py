"""Database models for the MSSQL MCP Server.

This module defines query results and the exceptions raised by the
SQL executor.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class QueryResult(BaseModel):
    """Result of executing a SQL statement."""

    rows_affected: List[int] = Field(
        default_factory=list, description="Rows affected per statement"
    )
    recordsets: List[List[Dict[str, Any]]] = Field(
        default_factory=list, description="Result sets returned by the statement"
    )
    execution_time_ms: float = Field(0, description="Execution duration")

    @property
    def total_rows_affected(self) -> int:
        return sum(count for count in self.rows_affected if count > 0)

    @property
    def first_recordset(self) -> List[Dict[str, Any]]:
        return self.recordsets[0] if self.recordsets else []


class DatabaseError(Exception):
    """Base exception for database-related errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "DATABASE_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}


class DatabaseConnectionError(DatabaseError):
    """Raised when the database cannot be reached."""

    def __init__(self, message: str, server: Optional[str] = None):
        super().__init__(message, "DATABASE_CONNECTION_ERROR")
        self.details = {"server": server}


class DatabaseExecutionError(DatabaseError):
    """Raised when the database rejects or fails a statement."""

    def __init__(self, message: str, query: Optional[str] = None):
        super().__init__(message, "DATABASE_EXECUTION_ERROR")
        self.details = {"query": query}


class InvalidIdentifierError(DatabaseError):
    """Raised when a table or procedure name fails validation."""

    def __init__(self, message: str, identifier: Optional[str] = None):
        super().__init__(message, "INVALID_IDENTIFIER")
        self.details = {"identifier": identifier}
