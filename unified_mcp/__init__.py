"""
Unified MCP Server - aggregates several MCP backends behind one endpoint.
"""
__version__ = "1.0.0"

SERVER_NAME = "unified-mcp-server"
