"""Safety module for MSSQL MCP Server.

This module guards every destructive database operation:
- Policy decisions (forbidden, approval required, allowed)
- Dry-run previews with single-use confirmation tokens
- Interactive operator approval over MCP elicitation
- Append-only audit log of previews and executions

CRITICAL: All destructive operations must pass through SafetyGateway.
"""
