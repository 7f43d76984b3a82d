"""Exception handling decorator for MCP tools.

Tools return plain dicts with a `success` flag. Anything a tool does not
handle itself is logged and turned into a failure dict, so a client never
sees a raw traceback.
"""

import functools
from typing import Any, Awaitable, Callable, Dict

from feed_sync.logging_config import get_logger


def exception_handler(func: Callable[..., Awaitable[Dict[str, Any]]]) -> Callable[..., Awaitable[Dict[str, Any]]]:
    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Dict[str, Any]:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            get_logger(func.__module__).error(f"Tool {func.__name__} failed: {e}", exc_info=True)
            return {
                "success": False,
                "error": f"{type(e).__name__}: {e}",
            }

    return wrapper
