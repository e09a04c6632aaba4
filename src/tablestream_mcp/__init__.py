"""TableStream MCP - streaming SQL queries over a CSV table for MCP clients."""

__version__ = "1.0.0"
