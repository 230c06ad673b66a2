"""MCP tool handlers that build SQL and route it through the safety gateway."""
