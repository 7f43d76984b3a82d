"""Main module for the feed_sync MCP server.

This module allows the server to be run as a Python module using:
python -m feed_sync

It delegates to the server application's main function.
"""

from feed_sync.server.app import main

if __name__ == "__main__":
    main()
