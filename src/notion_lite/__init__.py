"""Token-efficient, workspace-agnostic Notion CLI and MCP server."""

__version__ = "0.1.0"
