"""MSSQL MCP Server.

MCP server giving AI assistants guarded access to Microsoft SQL Server.
"""

__version__ = "0.1.0"
