"""Decorators applied to MCP tools."""
