"""MCP Hub - connect to, supervise and debug MCP tool servers."""

__version__ = "0.4.0"
