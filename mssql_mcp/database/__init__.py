"""Database access for MSSQL MCP Server.

Executors run SQL with bound parameters against SQL Server, or record
statements in mock mode.
"""
