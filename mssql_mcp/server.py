"""MSSQL MCP Server - Main server implementation.

This module provides the MCP server that lets AI assistants work with a
Microsoft SQL Server database. Reads run directly; every destructive tool
call goes through the safety gateway, which forbids, previews or executes
it according to the configured safety policy.

CRITICAL SAFETY NOTE: destructive tools must never reach the database
without passing through SafetyGateway.run().
"""

import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog
import typer
from dotenv import load_dotenv
from fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from .capabilities.detector import (
    get_capabilities,
    init_capabilities,
    reset_capabilities,
)
from .database.client import MockSqlExecutor, PymssqlExecutor, SqlExecutor
from .safety.audit import AuditLog
from .safety.confirmation_store import ConfirmationStore
from .safety.elicitation import ElicitationBridge, create_elicitation_bridge
from .safety.gateway import SafetyGateway
from .safety.models import SafetyPolicy
from .safety.policy import load_safety_policy
from .tools.handlers import DatabaseTools

# Load environment variables
load_dotenv()

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


class ServerConfig(BaseModel):
    """Configuration for the MSSQL MCP server."""

    # SQL Server Configuration
    server_name: str = Field(
        default_factory=lambda: os.getenv("MSSQL_SERVER", "localhost"),
        description="SQL Server host name",
    )
    database_name: str = Field(
        default_factory=lambda: os.getenv("MSSQL_DATABASE", "master"),
        description="Database to connect to",
    )
    sql_user: str = Field(
        default_factory=lambda: os.getenv("MSSQL_USER", ""),
        description="SQL authentication user",
    )
    sql_password: str = Field(
        default_factory=lambda: os.getenv("MSSQL_PASSWORD", ""),
        description="SQL authentication password",
    )
    sql_port: int = Field(
        default_factory=lambda: int(os.getenv("MSSQL_PORT", "1433")),
        description="SQL Server TCP port",
    )
    connection_timeout_seconds: int = Field(
        default_factory=lambda: int(os.getenv("MSSQL_CONNECTION_TIMEOUT", "30")),
        description="Login timeout in seconds",
    )
    readonly: bool = Field(
        default_factory=lambda: _env_bool("READONLY"),
        description="Expose read-only tools only",
    )

    # Safety Configuration
    safety_policy: SafetyPolicy = Field(
        default_factory=load_safety_policy,
        description="Safety policy loaded from the environment",
    )
    operation_log_dir: str = Field(
        default_factory=lambda: os.getenv("OPERATION_LOG_DIR", "./logs"),
        description="Directory for the operation audit log",
    )
    elicitation_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("ELICITATION_TIMEOUT_SECONDS", "300")),
        description="How long to wait for an interactive approval",
    )

    # Development Settings
    development_mode: bool = Field(
        default_factory=lambda: _env_bool("DEVELOPMENT_MODE"),
        description="Enable development mode with additional logging",
    )
    mock_database: bool = Field(
        default_factory=lambda: _env_bool("MOCK_DATABASE"),
        description="Record statements instead of connecting to SQL Server",
    )


DESTRUCTIVE_TOOLS = [
    "drop_table",
    "create_table",
    "create_index",
    "insert_data",
    "update_data",
    "delete_data",
    "exec_procedure",
]

READ_TOOLS = [
    "read_data",
    "list_tables",
    "describe_table",
    "server_info",
    "get_operation_history",
]


class MssqlMCPServer:
    """Main MSSQL MCP Server implementation.

    Wires the executor, confirmation store, audit log and safety gateway
    together and registers the MCP tools.
    """

    def __init__(self, config: ServerConfig, executor: Optional[SqlExecutor] = None):
        """Initialize the MSSQL MCP server.

        Args:
            config: Server configuration settings
            executor: Executor override, mainly for tests
        """
        self.config = config
        self.logger = structlog.get_logger(self.__class__.__name__)

        # Initialize FastMCP server
        self.mcp: FastMCP = FastMCP("mssql-mcp-server")

        # Server state
        self._running = False

        self.executor: SqlExecutor = executor or self._create_executor()
        self.confirmation_store = ConfirmationStore(
            ttl_seconds=config.safety_policy.confirmation_ttl_seconds
        )
        self.audit_log = AuditLog(config.operation_log_dir)
        self.gateway = SafetyGateway(
            policy=config.safety_policy,
            confirmation_store=self.confirmation_store,
            audit_log=self.audit_log,
            executor=self.executor,
        )
        self.tools = DatabaseTools(self.gateway, self.executor)

        self.registered_tools: List[str] = []
        self._register_tools()

        self.logger.info(
            "MSSQL MCP Server initialized",
            server=config.server_name,
            database=config.database_name,
            readonly=config.readonly,
            dry_run=config.safety_policy.enable_dry_run,
            allow_dangerous_operations=config.safety_policy.allow_dangerous_operations,
            development_mode=config.development_mode,
        )

    def _create_executor(self) -> SqlExecutor:
        if self.config.mock_database:
            self.logger.warning("Using mock database executor")
            return MockSqlExecutor()
        return PymssqlExecutor(
            server=self.config.server_name,
            database=self.config.database_name,
            user=self.config.sql_user,
            password=self.config.sql_password,
            port=self.config.sql_port,
            login_timeout=self.config.connection_timeout_seconds,
        )

    async def _ensure_ready(self) -> None:
        """Connect and run capability detection once per process."""
        await self.executor.connect()
        await init_capabilities(self.executor)

    def _bridge(self, ctx: Optional[Context]) -> Optional[ElicitationBridge]:
        return create_elicitation_bridge(
            ctx, timeout_seconds=self.config.elicitation_timeout_seconds
        )

    async def _call(self, tool_name: str, call: Any) -> Dict[str, Any]:
        """Run a tool body, turning unexpected failures into error responses."""
        try:
            await self._ensure_ready()
            return await call()
        except Exception as e:
            self.logger.error("Tool failed", tool=tool_name, error=str(e))
            return {
                "success": False,
                "mode": "error",
                "message": f"{tool_name} failed. See the server log for details.",
                "error_code": getattr(e, "error_code", "TOOL_FAILED"),
            }

    def _register_tools(self) -> None:
        """Register MCP tools for AI assistant interaction."""
        self._register_read_tools()
        if self.config.readonly:
            self.logger.info("Read-only mode, destructive tools not registered")
            return
        self._register_destructive_tools()

    def _register_read_tools(self) -> None:
        tools = self.tools

        @self.mcp.tool()
        async def read_data(query: str) -> Dict[str, Any]:
            """Execute a SELECT query and return the rows.

            Args:
                query: A single SELECT statement
            """
            return await self._call("read_data", lambda: tools.read_data(query))

        @self.mcp.tool()
        async def list_tables(schemas: Optional[List[str]] = None) -> Dict[str, Any]:
            """List tables in the database, optionally filtered by schema.

            Args:
                schemas: Schema names to include (optional)
            """
            return await self._call("list_tables", lambda: tools.list_tables(schemas))

        @self.mcp.tool()
        async def describe_table(table_name: str) -> Dict[str, Any]:
            """Describe the columns of a table.

            Args:
                table_name: Table to describe
            """
            return await self._call(
                "describe_table", lambda: tools.describe_table(table_name)
            )

        @self.mcp.tool()
        async def server_info() -> Dict[str, Any]:
            """Report the detected SQL Server version and feature support."""

            async def body() -> Dict[str, Any]:
                capabilities = get_capabilities()
                policy = self.config.safety_policy
                return {
                    "success": True,
                    "capabilities": capabilities.model_dump() if capabilities else None,
                    "readonly": self.config.readonly,
                    "safety_policy": policy.model_dump(),
                }

            return await self._call("server_info", body)

        @self.mcp.tool()
        async def get_operation_history(
            limit: int = 50,
            operation_filter: Optional[str] = None,
        ) -> Dict[str, Any]:
            """Get the most recent destructive operations from the audit log.

            Args:
                limit: Maximum number of entries to return
                operation_filter: Only entries of this operation type (optional)

            Returns:
                Dictionary with history entries, newest first
            """
            self.logger.info(
                "Retrieving operation history",
                limit=limit,
                operation_filter=operation_filter,
            )
            try:
                history = self.audit_log.get_history(
                    limit=limit, operation_filter=operation_filter
                )
            except Exception as e:
                self.logger.error("Failed to retrieve operation history", error=str(e))
                return {
                    "success": False,
                    "message": str(e),
                    "error_code": "HISTORY_RETRIEVAL_FAILED",
                }
            return {
                "success": True,
                "history": history,
                "total_count": len(history),
            }

        self.registered_tools.extend(READ_TOOLS)

    def _register_destructive_tools(self) -> None:
        tools = self.tools

        @self.mcp.tool()
        async def drop_table(
            table_name: str,
            if_exists: bool = False,
            confirm_token: Optional[str] = None,
            ctx: Optional[Context] = None,
        ) -> Dict[str, Any]:
            """Drop a table from the database.

            With dry-run enabled the first call returns a preview and a
            confirm_token; call again with the token to execute.

            Args:
                table_name: Table to drop
                if_exists: Use DROP TABLE IF EXISTS where supported
                confirm_token: Token from the preview call
            """
            return await self._call(
                "drop_table",
                lambda: tools.drop_table(
                    table_name, if_exists, confirm_token, self._bridge(ctx)
                ),
            )

        @self.mcp.tool()
        async def create_table(
            table_name: str,
            columns: List[Dict[str, str]],
            confirm_token: Optional[str] = None,
            ctx: Optional[Context] = None,
        ) -> Dict[str, Any]:
            """Create a new table.

            Args:
                table_name: Table to create
                columns: Column definitions, each {"name": ..., "type": ...}
                confirm_token: Token from the preview call
            """
            return await self._call(
                "create_table",
                lambda: tools.create_table(
                    table_name, columns, confirm_token, self._bridge(ctx)
                ),
            )

        @self.mcp.tool()
        async def create_index(
            table_name: str,
            index_name: str,
            columns: List[str],
            unique: bool = False,
            confirm_token: Optional[str] = None,
            ctx: Optional[Context] = None,
        ) -> Dict[str, Any]:
            """Create an index on a table.

            Args:
                table_name: Table to index
                index_name: Name of the new index
                columns: Indexed columns in order
                unique: Create a unique index
                confirm_token: Token from the preview call
            """
            return await self._call(
                "create_index",
                lambda: tools.create_index(
                    table_name, index_name, columns, unique, confirm_token, self._bridge(ctx)
                ),
            )

        @self.mcp.tool()
        async def insert_data(
            table_name: str,
            data: Union[Dict[str, Any], List[Dict[str, Any]]],
            confirm_token: Optional[str] = None,
            ctx: Optional[Context] = None,
        ) -> Dict[str, Any]:
            """Insert one record or an array of records with the same columns.

            Args:
                table_name: Target table
                data: A record or a list of records
                confirm_token: Token from the preview call
            """
            return await self._call(
                "insert_data",
                lambda: tools.insert_data(
                    table_name, data, confirm_token, self._bridge(ctx)
                ),
            )

        @self.mcp.tool()
        async def update_data(
            table_name: str,
            updates: Dict[str, Any],
            where_clause: str,
            confirm_token: Optional[str] = None,
            ctx: Optional[Context] = None,
        ) -> Dict[str, Any]:
            """Update rows matching a WHERE clause.

            Args:
                table_name: Target table
                updates: Column to new value mapping
                where_clause: Mandatory row filter
                confirm_token: Token from the preview call
            """
            return await self._call(
                "update_data",
                lambda: tools.update_data(
                    table_name, updates, where_clause, confirm_token, self._bridge(ctx)
                ),
            )

        @self.mcp.tool()
        async def delete_data(
            table_name: str,
            where_clause: str,
            confirm_token: Optional[str] = None,
            ctx: Optional[Context] = None,
        ) -> Dict[str, Any]:
            """Delete rows matching a WHERE clause.

            Args:
                table_name: Target table
                where_clause: Mandatory row filter
                confirm_token: Token from the preview call
            """
            return await self._call(
                "delete_data",
                lambda: tools.delete_data(
                    table_name, where_clause, confirm_token, self._bridge(ctx)
                ),
            )

        @self.mcp.tool()
        async def exec_procedure(
            procedure_name: str,
            parameters: Optional[Dict[str, Any]] = None,
            confirm_token: Optional[str] = None,
            ctx: Optional[Context] = None,
        ) -> Dict[str, Any]:
            """Execute a stored procedure.

            Disabled unless ALLOW_EXEC_PROCEDURE=true.

            Args:
                procedure_name: Procedure name, optionally schema-qualified
                parameters: Named input parameters (without the @ prefix)
                confirm_token: Token from the preview call
            """
            return await self._call(
                "exec_procedure",
                lambda: tools.exec_procedure(
                    procedure_name, parameters, confirm_token, self._bridge(ctx)
                ),
            )

        self.registered_tools.extend(DESTRUCTIVE_TOOLS)

    async def start(self) -> None:
        """Start the MCP server."""
        if self._running:
            self.logger.warning("Server is already running")
            return

        self._running = True
        self.logger.info("Starting MSSQL MCP Server")

        try:
            await self._validate_configuration()
            await self.mcp.run_async()
        except Exception as e:
            self.logger.error("Failed to start server", error=str(e), exc_info=True)
            self._running = False
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the MCP server and release the connection."""
        if not self._running:
            return

        self.logger.info("Stopping MSSQL MCP Server")
        self._running = False
        await self.executor.close()
        self.confirmation_store.clear()
        reset_capabilities()

    async def _validate_configuration(self) -> None:
        """Validate configuration and database connectivity."""
        self.logger.info("Validating configuration")

        if not self.config.mock_database and not self.config.sql_user:
            raise ValueError("MSSQL_USER must be set unless MOCK_DATABASE=true")

        await self._ensure_ready()
        capabilities = get_capabilities()
        self.logger.info(
            "Configuration validation completed",
            product_name=capabilities.version.product_name if capabilities else None,
        )


def create_app() -> typer.Typer:
    """Create the Typer CLI application."""
    app = typer.Typer(
        name="mssql-mcp-server",
        help="MCP server for safe Microsoft SQL Server access",
        add_completion=False,
    )

    @app.command()
    def start(
        env_file: Optional[Path] = typer.Option(
            None,
            "--env-file",
            "-e",
            help="Path to a .env file with server settings",
        ),
        development: bool = typer.Option(
            False,
            "--dev",
            help="Enable development mode",
        ),
        mock: bool = typer.Option(
            False,
            "--mock",
            help="Use the mock database executor",
        ),
    ) -> None:
        """Start the MSSQL MCP server."""
        if env_file:
            load_dotenv(env_file, override=True)

        config = ServerConfig()
        if development:
            config.development_mode = True
        if mock:
            config.mock_database = True

        server = MssqlMCPServer(config)

        try:
            asyncio.run(server.start())
        except KeyboardInterrupt:
            logger.info("Received interrupt signal, shutting down...")
        except Exception as e:
            logger.error("Server failed", error=str(e), exc_info=True)
            sys.exit(1)

    @app.command()
    def validate(
        env_file: Optional[Path] = typer.Option(
            None,
            "--env-file",
            "-e",
            help="Path to a .env file with server settings",
        ),
    ) -> None:
        """Validate configuration and database connectivity."""
        if env_file:
            load_dotenv(env_file, override=True)

        config = ServerConfig()
        server = MssqlMCPServer(config)

        async def run_validation() -> None:
            try:
                await server._validate_configuration()
                typer.echo("✅ Configuration validation passed")
            except Exception as e:
                typer.echo(f"❌ Configuration validation failed: {e}")
                sys.exit(1)
            finally:
                await server.executor.close()

        asyncio.run(run_validation())

    return app


def main() -> None:
    """Main entry point for the MSSQL MCP server."""
    app = create_app()
    app()


if __name__ == "__main__":
    main()
