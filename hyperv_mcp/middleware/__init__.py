"""FastMCP middleware for the Hyper-V MCP server.

- LoggingMiddleware: request/response logging to console and middleware.log
- ErrorHandlingMiddleware: error tracking, categorized by Hyper-V MCP error class

Both write through the middleware logger configured in core.logging_config.
"""

from .error_handling import ErrorHandlingMiddleware
from .logging import LoggingMiddleware

__all__ = [
    "LoggingMiddleware",
    "ErrorHandlingMiddleware",
]
