"""feed_sync - MCP Server

This module implements the MCP server using FastMCP with multi-transport support
(STDIO, SSE, and Streamable HTTP). The process owns the sync runtime: the
scheduler starts once when `main` starts serving and stops when it exits,
however many client sessions come and go.
"""

import asyncio
import os
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import click
from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings

from feed_sync.config import ServerConfig, get_config
from feed_sync.decorators.exception_handler import exception_handler
from feed_sync.logging_config import get_logger, logger, setup_logging
from feed_sync.runtime import SyncRuntime, close_runtime, get_runtime
from feed_sync.storage.database import close_database
from feed_sync.tools.sync_tools import sync_tools


@asynccontextmanager
async def runtime_scope() -> AsyncIterator[SyncRuntime]:
    """Own the process-wide runtime: start the scheduler, tear everything down on exit."""
    runtime = get_runtime()
    runtime.start()
    try:
        yield runtime
    finally:
        await close_runtime()
        await close_database()


@asynccontextmanager
async def sync_lifespan(server: FastMCP) -> AsyncIterator[SyncRuntime]:
    """Per-session lifespan.

    FastMCP enters this once per client connection, so it only hands the
    shared runtime to the session. Starting and stopping belong to
    `runtime_scope`, entered once by `main`.
    """
    yield get_runtime()


def create_mcp_server(config: Optional[ServerConfig] = None) -> FastMCP:
    """Create and configure the MCP server.

    Args:
        config: Optional server configuration

    Returns:
        Configured FastMCP server instance
    """
    if config is None:
        config = get_config()

    setup_logging(config)
    server_logger = get_logger("feed_sync.server")
    server_logger.info(f"Server config: {config.name} at log level {config.log_level}")

    # Configure DNS rebinding protection (disabled by default for development)
    dns_protection = os.getenv("MCP_DNS_REBINDING_PROTECTION", "false").lower() == "true"
    allowed_hosts_env = os.getenv("MCP_ALLOWED_HOSTS", "")
    allowed_hosts = [h.strip() for h in allowed_hosts_env.split(",") if h.strip()] if allowed_hosts_env else []

    server_logger.info(f"DNS rebinding protection: {'enabled' if dns_protection else 'disabled'}")
    if dns_protection and allowed_hosts:
        server_logger.info(f"Allowed hosts: {allowed_hosts}")

    mcp_server = FastMCP(
        config.name or "feed_sync",
        lifespan=sync_lifespan,
        transport_security=TransportSecuritySettings(
            enable_dns_rebinding_protection=dns_protection,
            allowed_hosts=allowed_hosts
        )
    )

    register_tools(mcp_server)

    server_logger.info("Server initialization complete")
    return mcp_server


def register_tools(mcp_server: FastMCP) -> None:
    """Register all MCP tools with the server.

    Registers decorated functions directly with MCP to preserve function signatures
    for proper parameter introspection.
    """
    server_logger = get_logger("feed_sync.server")

    for tool_func in sync_tools:
        decorated_func = exception_handler(tool_func)
        tool_name = tool_func.__name__

        mcp_server.tool(
            name=tool_name
        )(decorated_func)

        server_logger.info(f"Registered sync tool: {tool_name}")

    server_logger.info(f"Server '{mcp_server.name}' initialized with {len(sync_tools)} tools")


@click.command()
@click.option(
    "--port",
    default=3001,
    help="Port to listen on for SSE or Streamable HTTP transport"
)
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (use 0.0.0.0 for Docker)"
)
@click.option(
    "--transport",
    type=click.Choice(["stdio", "sse", "streamable-http"]),
    default="stdio",
    help="Transport type (stdio, sse, or streamable-http)"
)
def main(port: int, host: str, transport: str) -> int:
    """Run the feed_sync server with specified transport."""
    server = create_mcp_server()

    async def run_server():
        """Inner async function to run the server and manage the event loop."""
        async with runtime_scope():
            if transport == "stdio":
                logger.info("Starting server with STDIO transport")
                await server.run_stdio_async()
            elif transport == "sse":
                logger.info(f"Starting server with SSE transport on {host}:{port}")
                server.settings.host = host
                server.settings.port = port
                await server.run_sse_async()
            elif transport == "streamable-http":
                logger.info(f"Starting server with Streamable HTTP transport on {host}:{port}")
                server.settings.host = host
                server.settings.port = port
                server.settings.streamable_http_path = "/mcp"
                await server.run_streamable_http_async()
            else:
                raise ValueError(f"Unknown transport: {transport}")

    try:
        asyncio.run(run_server())
        return 0
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        return 0
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
