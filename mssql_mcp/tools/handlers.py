"""Database tool handlers.

Handlers validate tool arguments, build the SQL text and hand destructive
operations to the SafetyGateway. They never call the executor directly
for anything but reads and impact estimates.
"""

import json
import re
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from ..capabilities.detector import generate_capability_warning, get_capabilities
from ..capabilities.models import ServerCapabilities
from ..database.client import SqlExecutor
from ..database.models import InvalidIdentifierError
from ..safety.elicitation import ElicitationBridge
from ..safety.formatter import format_exec_disabled
from ..safety.gateway import OperationRequest, SafetyGateway
from ..safety.models import FlowMode, OperationKind, OperationResult

logger = structlog.get_logger(__name__)

TABLE_NAME_PATTERN = re.compile(r"^[\w.\[\]]+$")
COLUMN_NAME_PATTERN = re.compile(r"^[\w ]+$")
PROC_NAME_WITH_SCHEMA = re.compile(r"^\w+\.\w+$")
PROC_NAME_WITHOUT_SCHEMA = re.compile(r"^\w+$")
MAX_PROCEDURE_NAME_LENGTH = 256
MAX_RECORDS = 10000


def validate_table_name(name: Any) -> str:
    """Allow letters, digits, underscores, dots (schema) and brackets."""
    if not isinstance(name, str) or not name or not TABLE_NAME_PATTERN.match(name):
        raise InvalidIdentifierError(
            "Invalid table name. Table names can only contain letters, numbers, "
            "underscores, dots, and brackets.",
            identifier=str(name),
        )
    return name


def validate_column_name(name: Any) -> str:
    if not isinstance(name, str) or not COLUMN_NAME_PATTERN.match(name):
        raise InvalidIdentifierError(
            f"Invalid column name: {name!r}", identifier=str(name)
        )
    return name


def validate_procedure_name(name: Any) -> str:
    """Procedure names are ``schema.name`` or ``name`` of word characters."""
    if not isinstance(name, str) or not name:
        raise InvalidIdentifierError("Procedure name must be a non-empty string")
    if len(name) > MAX_PROCEDURE_NAME_LENGTH:
        raise InvalidIdentifierError(
            "Procedure name is too long. Maximum 256 characters.", identifier=name
        )
    if not (PROC_NAME_WITH_SCHEMA.match(name) or PROC_NAME_WITHOUT_SCHEMA.match(name)):
        raise InvalidIdentifierError(
            "Invalid procedure name. Only word characters (letters, digits, "
            "underscores) are allowed, with optional schema prefix "
            '(e.g. "dbo.up_MyProc" or "up_MyProc").',
            identifier=name,
        )
    return name


def quote_identifier(name: str) -> str:
    """Bracket-quote each dotted part: dbo.Users -> [dbo].[Users]."""
    parts = [part.strip("[]") for part in name.split(".")]
    return ".".join(f"[{part}]" for part in parts if part)


def _error(message: str, error_code: str) -> Dict[str, Any]:
    return OperationResult(
        mode=FlowMode.ERROR, success=False, message=message, error_code=error_code
    ).to_response()


class DatabaseTools:
    """Builds database operations for the MCP tools."""

    def __init__(
        self,
        gateway: SafetyGateway,
        executor: SqlExecutor,
        capabilities_provider: Callable[
            [], Optional[ServerCapabilities]
        ] = get_capabilities,
    ):
        self.gateway = gateway
        self.executor = executor
        self.capabilities_provider = capabilities_provider
        self.logger = structlog.get_logger(self.__class__.__name__)

    @property
    def policy(self):
        return self.gateway.policy

    async def drop_table(
        self,
        table_name: str,
        if_exists: bool = False,
        confirm_token: Optional[str] = None,
        bridge: Optional[ElicitationBridge] = None,
    ) -> Dict[str, Any]:
        """Drop a table, using IF EXISTS where the server supports it."""
        try:
            validate_table_name(table_name)
        except InvalidIdentifierError as e:
            return _error(e.message, e.error_code)

        capabilities = self.capabilities_provider()
        supports_if_exists = bool(capabilities and capabilities.supports_drop_if_exists)
        quoted = quote_identifier(table_name)

        warnings: List[str] = []
        if if_exists and supports_if_exists:
            query = f"DROP TABLE IF EXISTS {quoted}"
        else:
            query = f"DROP TABLE {quoted}"
            if if_exists:
                product = (
                    capabilities.version.product_name
                    if capabilities
                    else "this SQL Server version"
                )
                warnings.append(
                    generate_capability_warning(
                        "DROP TABLE IF EXISTS", "SQL Server 2016", product
                    )
                    + "\nUsing standard DROP TABLE instead."
                )

        request = OperationRequest(
            kind=OperationKind.DROP,
            target=table_name,
            query=query,
            confirmation_params={"table_name": table_name},
            impact="This will permanently delete the table and all its data.",
            success_message=f"Table '{table_name}' dropped successfully.",
            failure_message=f"Failed to drop table '{table_name}'.",
            warnings=warnings,
        )
        result = await self.gateway.run(request, confirm_token, bridge)
        return result.to_response()

    def _type_warnings(self, columns: List[Dict[str, str]]) -> List[str]:
        capabilities = self.capabilities_provider()
        if not capabilities:
            return []

        warnings = []
        for column in columns:
            type_upper = column["type"].upper()
            if "JSON" in type_upper and not capabilities.supports_json:
                warnings.append(
                    f"Column '{column['name']}': JSON type requires SQL Server 2016+. "
                    f"Current: {capabilities.version.product_name}. "
                    "Consider using NVARCHAR(MAX) instead."
                )
            if "UTF8" in type_upper and not capabilities.supports_utf8:
                warnings.append(
                    f"Column '{column['name']}': UTF-8 collations require SQL Server 2019+. "
                    f"Current: {capabilities.version.product_name}."
                )
        return warnings

    async def create_table(
        self,
        table_name: str,
        columns: List[Dict[str, str]],
        confirm_token: Optional[str] = None,
        bridge: Optional[ElicitationBridge] = None,
    ) -> Dict[str, Any]:
        """Create a table from column definitions."""
        try:
            validate_table_name(table_name)
            if not isinstance(columns, list) or not columns:
                return _error("'columns' must be a non-empty array", "INVALID_COLUMNS")
            for column in columns:
                if not isinstance(column, dict) or not column.get("type"):
                    return _error(
                        "Each column needs a 'name' and a 'type'", "INVALID_COLUMNS"
                    )
                validate_column_name(column.get("name"))
        except InvalidIdentifierError as e:
            return _error(e.message, e.error_code)

        column_defs = ", ".join(f"[{col['name']}] {col['type']}" for col in columns)
        query = f"CREATE TABLE {quote_identifier(table_name)} ({column_defs})"
        column_list = "\n".join(f"  - {col['name']}: {col['type']}" for col in columns)

        request = OperationRequest(
            kind=OperationKind.CREATE,
            target=table_name,
            query=query,
            confirmation_params={"table_name": table_name, "columns": columns},
            impact=f"This will create a new table with the following columns:\n{column_list}",
            success_message=f"Table '{table_name}' created successfully.",
            failure_message=f"Failed to create table '{table_name}'.",
            warnings=self._type_warnings(columns),
        )
        result = await self.gateway.run(request, confirm_token, bridge)
        return result.to_response()

    async def create_index(
        self,
        table_name: str,
        index_name: str,
        columns: List[str],
        unique: bool = False,
        confirm_token: Optional[str] = None,
        bridge: Optional[ElicitationBridge] = None,
    ) -> Dict[str, Any]:
        """Create a (optionally unique) nonclustered index."""
        try:
            validate_table_name(table_name)
            validate_column_name(index_name)
            if not isinstance(columns, list) or not columns:
                return _error("'columns' must be a non-empty array", "INVALID_COLUMNS")
            for column in columns:
                validate_column_name(column)
        except InvalidIdentifierError as e:
            return _error(e.message, e.error_code)

        column_list = ", ".join(f"[{column}]" for column in columns)
        unique_clause = "UNIQUE " if unique else ""
        query = (
            f"CREATE {unique_clause}NONCLUSTERED INDEX [{index_name}] "
            f"ON {quote_identifier(table_name)} ({column_list})"
        )

        request = OperationRequest(
            kind=OperationKind.CREATE,
            target=f"{table_name}.{index_name}",
            query=query,
            confirmation_params={
                "table_name": table_name,
                "index_name": index_name,
                "columns": columns,
                "unique": unique,
            },
            impact=f"This will build index {index_name} on {table_name} ({', '.join(columns)}).",
            success_message=f"Index '{index_name}' created successfully on '{table_name}'.",
            failure_message=f"Failed to create index '{index_name}'.",
        )
        result = await self.gateway.run(request, confirm_token, bridge)
        return result.to_response()

    async def insert_data(
        self,
        table_name: str,
        data: Union[Dict[str, Any], List[Dict[str, Any]]],
        confirm_token: Optional[str] = None,
        bridge: Optional[ElicitationBridge] = None,
    ) -> Dict[str, Any]:
        """Insert one record or a batch of records with identical columns."""
        try:
            validate_table_name(table_name)
        except InvalidIdentifierError as e:
            return _error(e.message, e.error_code)

        records = data if isinstance(data, list) else [data]
        if not records or not all(isinstance(record, dict) and record for record in records):
            return _error("No data provided for insertion", "NO_DATA")

        columns = sorted(records[0].keys())
        for index, record in enumerate(records[1:], start=2):
            current = sorted(record.keys())
            if current != columns:
                return _error(
                    f"Column mismatch: Record {index} has different columns than the "
                    f"first record. Expected columns: [{', '.join(columns)}], but got: "
                    f"[{', '.join(current)}]",
                    "COLUMN_MISMATCH",
                )
        try:
            for column in columns:
                validate_column_name(column)
        except InvalidIdentifierError as e:
            return _error(e.message, e.error_code)

        params: Dict[str, Any] = {}
        value_clauses = []
        for record_index, record in enumerate(records):
            placeholders = []
            for column_index, column in enumerate(columns):
                name = f"value{record_index}_{column_index}"
                params[name] = record[column]
                placeholders.append(f"@{name}")
            value_clauses.append(f"({', '.join(placeholders)})")

        column_sql = ", ".join(f"[{column}]" for column in columns)
        query = (
            f"INSERT INTO {quote_identifier(table_name)} ({column_sql}) "
            f"VALUES {', '.join(value_clauses)}"
        )

        request = OperationRequest(
            kind=OperationKind.INSERT,
            target=table_name,
            query=query,
            params=params,
            confirmation_params={"table_name": table_name, "data": data},
            impact=f"This will insert {len(records)} record(s) into {table_name}.",
            success_message=f"Data inserted successfully into '{table_name}'. {{rows}} row(s) inserted.",
            failure_message=f"Failed to insert data into '{table_name}'.",
        )
        result = await self.gateway.run(request, confirm_token, bridge)
        return result.to_response()

    def _count_estimator(self, table_name: str, where_clause: str):
        async def estimate() -> str:
            try:
                result = await self.executor.execute(
                    f"SELECT COUNT(*) AS cnt FROM {quote_identifier(table_name)} "
                    f"WHERE {where_clause}"
                )
                rows = result.first_recordset
                return f"Estimated rows affected: {rows[0]['cnt']}"
            except Exception as e:
                self.logger.warning(
                    "Could not estimate row count", table=table_name, error=str(e)
                )
                return "Could not estimate row count"

        return estimate

    async def update_data(
        self,
        table_name: str,
        updates: Dict[str, Any],
        where_clause: str,
        confirm_token: Optional[str] = None,
        bridge: Optional[ElicitationBridge] = None,
    ) -> Dict[str, Any]:
        """Update rows matching a mandatory WHERE clause."""
        try:
            validate_table_name(table_name)
            if not where_clause or not where_clause.strip():
                return _error(
                    "WHERE clause is required for security reasons", "WHERE_REQUIRED"
                )
            if not isinstance(updates, dict) or not updates:
                return _error("'updates' must be a non-empty object", "NO_UPDATES")
            for column in updates:
                validate_column_name(column)
        except InvalidIdentifierError as e:
            return _error(e.message, e.error_code)

        params: Dict[str, Any] = {}
        assignments = []
        for index, (column, value) in enumerate(updates.items()):
            name = f"update_{index}"
            params[name] = value
            assignments.append(f"[{column}] = @{name}")

        query = (
            f"UPDATE {quote_identifier(table_name)} SET {', '.join(assignments)} "
            f"WHERE {where_clause}"
        )
        updates_list = "\n".join(f"  - {column}: {json.dumps(value, default=str)}" for column, value in updates.items())
        count_estimate = self._count_estimator(table_name, where_clause)

        async def estimate() -> str:
            rows = await count_estimate()
            return (
                f"This will update the following columns:\n{updates_list}\n\n"
                f"WHERE: {where_clause}\n\n{rows}"
            )

        request = OperationRequest(
            kind=OperationKind.UPDATE,
            target=table_name,
            query=query,
            params=params,
            confirmation_params={
                "table_name": table_name,
                "updates": updates,
                "where_clause": where_clause,
            },
            estimate_impact=estimate,
            success_message="Update completed successfully. {rows} row(s) updated.",
            failure_message=f"Failed to update data in '{table_name}'.",
        )
        result = await self.gateway.run(request, confirm_token, bridge)
        return result.to_response()

    async def delete_data(
        self,
        table_name: str,
        where_clause: str,
        confirm_token: Optional[str] = None,
        bridge: Optional[ElicitationBridge] = None,
    ) -> Dict[str, Any]:
        """Delete rows matching a mandatory WHERE clause."""
        try:
            validate_table_name(table_name)
        except InvalidIdentifierError as e:
            return _error(e.message, e.error_code)
        if not where_clause or not where_clause.strip():
            return _error("WHERE clause is required for security reasons", "WHERE_REQUIRED")

        query = f"DELETE FROM {quote_identifier(table_name)} WHERE {where_clause}"
        count_estimate = self._count_estimator(table_name, where_clause)

        async def estimate() -> str:
            rows = await count_estimate()
            return (
                f"This will permanently delete rows matching:\nWHERE {where_clause}\n\n{rows}"
            )

        request = OperationRequest(
            kind=OperationKind.DELETE,
            target=table_name,
            query=query,
            confirmation_params={"table_name": table_name, "where_clause": where_clause},
            estimate_impact=estimate,
            success_message="Delete completed successfully. {rows} row(s) deleted.",
            failure_message=f"Failed to delete data from '{table_name}'.",
        )
        result = await self.gateway.run(request, confirm_token, bridge)
        return result.to_response()

    async def exec_procedure(
        self,
        procedure_name: str,
        parameters: Optional[Dict[str, Any]] = None,
        confirm_token: Optional[str] = None,
        bridge: Optional[ElicitationBridge] = None,
    ) -> Dict[str, Any]:
        """Execute a stored procedure with named input parameters."""
        if not self.policy.allow_exec_procedure:
            return OperationResult(
                mode=FlowMode.FORBIDDEN,
                success=False,
                message=format_exec_disabled(procedure_name),
                error_code="EXEC_PROCEDURE_DISABLED",
            ).to_response()

        try:
            validate_procedure_name(procedure_name)
            for name in parameters or {}:
                if not PROC_NAME_WITHOUT_SCHEMA.match(name):
                    raise InvalidIdentifierError(
                        f"Invalid parameter name: {name!r}", identifier=name
                    )
        except InvalidIdentifierError as e:
            return _error(
                f"Security validation failed: {e.message}", "SECURITY_VALIDATION_FAILED"
            )

        if parameters:
            param_desc = ", ".join(
                f"@{name} = {json.dumps(value, default=str)}"
                for name, value in parameters.items()
            )
        else:
            param_desc = "(none)"
        query = f"EXEC {procedure_name} {param_desc}"

        request = OperationRequest(
            kind=OperationKind.EXEC,
            target=procedure_name,
            query=query,
            params=dict(parameters or {}),
            procedure_name=procedure_name,
            confirmation_params={
                "procedure_name": procedure_name,
                "parameters": parameters,
            },
            impact=(
                f"This will execute stored procedure {procedure_name} with "
                f"{len(parameters or {})} parameter(s)."
            ),
            success_message=(
                f"Stored procedure '{procedure_name}' executed successfully. "
                "{rows} row(s) affected."
            ),
            failure_message=f"Failed to execute stored procedure '{procedure_name}'.",
        )
        result = await self.gateway.run(request, confirm_token, bridge)
        response = result.to_response()
        if "recordsets" in response:
            response["recordsets"] = [
                recordset[:MAX_RECORDS] for recordset in response["recordsets"]
            ]
        return response

    async def read_data(self, query: str) -> Dict[str, Any]:
        """Run a read-only SELECT statement."""
        statement = (query or "").strip().rstrip(";")
        if not statement.upper().startswith("SELECT") or ";" in statement:
            return _error(
                "Only single SELECT statements are allowed", "READ_ONLY_VIOLATION"
            )

        try:
            result = await self.executor.execute(statement)
        except Exception as e:
            self.logger.error("Read failed", error=str(e))
            return _error("Failed to read data.", getattr(e, "error_code", "READ_FAILED"))

        rows = result.first_recordset
        return {
            "success": True,
            "message": f"Retrieved {len(rows)} row(s).",
            "record_count": min(len(rows), MAX_RECORDS),
            "data": rows[:MAX_RECORDS],
        }

    async def list_tables(self, schemas: Optional[List[str]] = None) -> Dict[str, Any]:
        """List base tables, optionally limited to some schemas."""
        params: Dict[str, Any] = {}
        where = "WHERE TABLE_TYPE = 'BASE TABLE'"
        if schemas:
            placeholders = []
            for index, schema in enumerate(schemas):
                params[f"schema{index}"] = schema
                placeholders.append(f"@schema{index}")
            where += f" AND TABLE_SCHEMA IN ({', '.join(placeholders)})"

        query = (
            "SELECT TABLE_SCHEMA + '.' + TABLE_NAME AS name "
            f"FROM INFORMATION_SCHEMA.TABLES {where} ORDER BY TABLE_SCHEMA, TABLE_NAME"
        )
        try:
            result = await self.executor.execute(query, params)
        except Exception as e:
            self.logger.error("Listing tables failed", error=str(e))
            return _error("Failed to list tables.", getattr(e, "error_code", "LIST_FAILED"))

        return {
            "success": True,
            "message": "List tables executed successfully",
            "items": [row.get("name") for row in result.first_recordset],
        }

    async def describe_table(self, table_name: str) -> Dict[str, Any]:
        """Describe a table's columns."""
        try:
            validate_table_name(table_name)
        except InvalidIdentifierError as e:
            return _error(e.message, e.error_code)

        bare_name = table_name.split(".")[-1].strip("[]")
        query = (
            "SELECT COLUMN_NAME AS name, DATA_TYPE AS type, IS_NULLABLE AS nullable "
            "FROM INFORMATION_SCHEMA.COLUMNS WHERE TABLE_NAME = @tableName "
            "ORDER BY ORDINAL_POSITION"
        )
        try:
            result = await self.executor.execute(query, {"tableName": bare_name})
        except Exception as e:
            self.logger.error("Describe table failed", table=table_name, error=str(e))
            return _error(
                f"Failed to describe table '{table_name}'.",
                getattr(e, "error_code", "DESCRIBE_FAILED"),
            )

        return {"success": True, "columns": result.first_recordset}
