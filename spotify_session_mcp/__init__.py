"""Spotify tools over MCP Streamable HTTP with per-session OAuth tokens."""

__version__ = "1.0.0"
