# shipbuilder_mcp/__init__.py
"""OAuth 2.1 authorization server and MCP session manager for Shipbuilder."""

__version__ = "1.0.0"
