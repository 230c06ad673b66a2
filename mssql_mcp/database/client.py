"""SQL executors for the MSSQL MCP Server.

The safety layer only needs to run a statement with bound parameters and
get back affected-row counts and result sets. PymssqlExecutor does this
against a real SQL Server; MockSqlExecutor records statements for
development mode and tests.
"""

import asyncio
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import structlog

from .models import DatabaseConnectionError, DatabaseExecutionError, QueryResult

logger = structlog.get_logger(__name__)

VERSION_QUERY = "SELECT @@VERSION AS version"

_NAMED_PARAM = re.compile(r"(?<![@\w])@(\w+)")


class SqlExecutor(ABC):
    """Runs SQL against the backing store."""

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""

    @abstractmethod
    async def execute(
        self, sql: str, params: Optional[Dict[str, Any]] = None
    ) -> QueryResult:
        """Execute a statement with named ``@param`` placeholders."""

    @abstractmethod
    async def execute_procedure(
        self, procedure_name: str, params: Optional[Dict[str, Any]] = None
    ) -> QueryResult:
        """Execute a stored procedure with named input parameters."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the executor currently holds a live connection."""

    async def fetch_version(self) -> Optional[str]:
        """Return the server's @@VERSION string."""
        result = await self.execute(VERSION_QUERY)
        rows = result.first_recordset
        if not rows:
            return None
        return rows[0].get("version")


def to_pyformat(sql: str, params: Dict[str, Any]) -> str:
    """Rewrite ``@name`` placeholders into pymssql ``%(name)s`` style.

    Only names present in ``params`` are rewritten, so ``@@VERSION`` and
    T-SQL variables are left alone. Literal percent signs are escaped.
    """
    escaped = sql.replace("%", "%%")

    def replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in params:
            return f"%({name})s"
        return match.group(0)

    return _NAMED_PARAM.sub(replace, escaped)


class PymssqlExecutor(SqlExecutor):
    """SQL Server executor backed by pymssql.

    pymssql is blocking, so calls run in a worker thread and are
    serialised over the single connection.
    """

    def __init__(
        self,
        server: str,
        database: str,
        user: str,
        password: str,
        port: int = 1433,
        login_timeout: int = 30,
    ):
        self.server = server
        self.database = database
        self.user = user
        self.password = password
        self.port = port
        self.login_timeout = login_timeout

        self.logger = structlog.get_logger(self.__class__.__name__)
        self._conn: Any = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        import pymssql

        if self._conn is not None:
            return

        try:
            self._conn = await asyncio.to_thread(
                pymssql.connect,
                server=self.server,
                user=self.user,
                password=self.password,
                database=self.database,
                port=self.port,
                login_timeout=self.login_timeout,
                autocommit=True,
            )
        except pymssql.Error as e:
            raise DatabaseConnectionError(
                f"Failed to connect to SQL Server: {e}", server=self.server
            ) from e

        self.logger.info(
            "Connected to SQL Server", server=self.server, database=self.database
        )

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        try:
            await asyncio.to_thread(conn.close)
        except Exception as e:
            self.logger.warning("Error closing SQL Server connection", error=str(e))

    async def execute(
        self, sql: str, params: Optional[Dict[str, Any]] = None
    ) -> QueryResult:
        params = params or {}
        statement = to_pyformat(sql, params) if params else sql
        return await self._run(statement, params or None, original=sql)

    async def execute_procedure(
        self, procedure_name: str, params: Optional[Dict[str, Any]] = None
    ) -> QueryResult:
        params = params or {}
        # Left-hand @name stays a procedure parameter name
        assignments = ", ".join(f"@{name} = %({name})s" for name in params)
        statement = f"EXEC {procedure_name} {assignments}".rstrip()
        return await self._run(
            statement, params or None, original=f"EXEC {procedure_name}"
        )

    async def _run(
        self, statement: str, params: Optional[Dict[str, Any]], original: str
    ) -> QueryResult:
        import pymssql

        async with self._lock:
            await self.connect()
            started = time.monotonic()
            try:
                rows_affected, recordsets = await asyncio.to_thread(
                    self._execute_blocking, statement, params
                )
            except pymssql.OperationalError as e:
                # Drop a broken connection so the next call reconnects
                await self.close()
                raise DatabaseExecutionError(str(e), query=original) from e
            except pymssql.Error as e:
                raise DatabaseExecutionError(str(e), query=original) from e

        return QueryResult(
            rows_affected=rows_affected,
            recordsets=recordsets,
            execution_time_ms=(time.monotonic() - started) * 1000,
        )

    def _execute_blocking(
        self, statement: str, params: Optional[Dict[str, Any]]
    ) -> Tuple[List[int], List[List[Dict[str, Any]]]]:
        cursor = self._conn.cursor(as_dict=True)
        try:
            cursor.execute(statement, params)
            rows_affected: List[int] = []
            recordsets: List[List[Dict[str, Any]]] = []
            while True:
                if cursor.description:
                    recordsets.append(list(cursor.fetchall()))
                rows_affected.append(cursor.rowcount)
                if not cursor.nextset():
                    break
            return rows_affected, recordsets
        finally:
            cursor.close()


class MockSqlExecutor(SqlExecutor):
    """In-memory executor that records statements instead of running them."""

    DEFAULT_VERSION = (
        "Microsoft SQL Server 2019 (RTM) - 15.0.2000.5 (X64) \n"
        "\tSep 24 2019 13:48:23 \n\tCopyright (C) 2019 Microsoft Corporation\n"
        "\tDeveloper Edition (64-bit) on Linux (Ubuntu 18.04.3 LTS) <X64>"
    )

    def __init__(
        self,
        version_string: Optional[str] = DEFAULT_VERSION,
        rows_affected: int = 1,
        count_estimate: int = 0,
    ):
        self.version_string = version_string
        self.rows_affected = rows_affected
        self.count_estimate = count_estimate
        self.executed: List[Tuple[str, Dict[str, Any]]] = []
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self._connected = False
        self.logger = structlog.get_logger(self.__class__.__name__)

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    async def execute(
        self, sql: str, params: Optional[Dict[str, Any]] = None
    ) -> QueryResult:
        await self.connect()
        self.executed.append((sql, dict(params or {})))
        self.logger.debug("Mock statement executed", sql=sql)

        upper = sql.strip().upper()
        if "@@VERSION" in upper:
            rows = [{"version": self.version_string}] if self.version_string else []
            return QueryResult(rows_affected=[len(rows)], recordsets=[rows])
        if upper.startswith("SELECT COUNT(*)"):
            return QueryResult(
                rows_affected=[1], recordsets=[[{"cnt": self.count_estimate}]]
            )
        if upper.startswith("SELECT"):
            rows = [row for rows in self.tables.values() for row in rows]
            return QueryResult(rows_affected=[len(rows)], recordsets=[rows])
        return QueryResult(rows_affected=[self.rows_affected])

    async def execute_procedure(
        self, procedure_name: str, params: Optional[Dict[str, Any]] = None
    ) -> QueryResult:
        return await self.execute(f"EXEC {procedure_name}", params)
