"""Request logging middleware for the Hyper-V MCP server."""

import time
from typing import Any

from fastmcp.server.middleware import Middleware, MiddlewareContext

from ..core.logging_config import get_middleware_logger
from ._redaction import is_sensitive_field


class LoggingMiddleware(Middleware):
    """Logs every MCP message with its method, outcome and duration.

    Tool arguments are included with credentials redacted and long values
    truncated. Durations are logged in seconds.
    """

    def __init__(self, include_payloads: bool = True, max_payload_length: int = 1000):
        self.logger = get_middleware_logger()
        self.include_payloads = include_payloads
        self.max_payload_length = max_payload_length

    async def on_message(self, context: MiddlewareContext, call_next):
        start_time = time.monotonic()

        log_data: dict[str, Any] = {
            "method": context.method,
            "source": context.source,
            "message_type": context.type,
        }
        if self.include_payloads and hasattr(context.message, "__dict__"):
            log_data["params"] = self._sanitize_message(context.message)

        self.logger.info("MCP request started", **log_data)

        try:
            result = await call_next(context)
        except Exception as e:
            self.logger.error(
                "MCP request failed",
                method=context.method,
                success=False,
                duration_s=round(time.monotonic() - start_time, 2),
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            raise

        self.logger.info(
            "MCP request completed",
            method=context.method,
            success=True,
            duration_s=round(time.monotonic() - start_time, 2),
        )
        return result

    def _truncate(self, value: Any) -> Any:
        text = value if isinstance(value, str) else str(value)
        if len(text) > self.max_payload_length:
            return text[: self.max_payload_length] + "... [TRUNCATED]"
        return value

    def _sanitize_message(self, message: Any) -> dict[str, Any]:
        """Copy public message fields, redacting credentials and nested tool arguments."""
        sanitized: dict[str, Any] = {}
        for key, value in vars(message).items():
            if key.startswith("_"):
                continue
            if is_sensitive_field(key):
                sanitized[key] = "[REDACTED]"
            elif key == "arguments" and isinstance(value, dict):
                sanitized[key] = {
                    name: "[REDACTED]" if is_sensitive_field(name) else self._truncate(argument)
                    for name, argument in value.items()
                }
            elif isinstance(value, (str, dict, list)):
                sanitized[key] = self._truncate(value)
            else:
                sanitized[key] = value
        return sanitized
