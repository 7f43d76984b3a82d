"""feed_sync - scheduled, credential-pooled content sync served over MCP."""

__version__ = "0.1.0"
