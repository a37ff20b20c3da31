"""Tests for the Hyper-V MCP middleware."""

from types import SimpleNamespace

import pytest
from conftest import MockCall

from hyperv_mcp.core.exceptions import (
    ConfigurationError,
    ConnectivityError,
    PreconditionError,
    RemoteCommandError,
)
from hyperv_mcp.middleware import ErrorHandlingMiddleware, LoggingMiddleware
from hyperv_mcp.middleware._redaction import is_sensitive_field


class TestRedaction:
    """Credential field detection."""

    @pytest.mark.parametrize(
        "field", ["password", "SSH_PASSWORD", "api_token", "client_secret", "identity_file", "Authorization"]
    )
    def test_sensitive_fields(self, field):
        assert is_sensitive_field(field)

    @pytest.mark.parametrize("field", ["vm", "source_host", "destination_storage_path", "switch_name"])
    def test_ordinary_fields(self, field):
        assert not is_sensitive_field(field)


class TestLoggingMiddleware:
    """Request logging and payload sanitizing."""

    @pytest.mark.asyncio
    async def test_request_logging_success(self, mock_context):
        middleware = LoggingMiddleware()
        call_next = MockCall(return_value={"status": "moved"})

        result = await middleware.on_message(mock_context, call_next)

        assert result == {"status": "moved"}
        assert call_next.call_count == 1

    @pytest.mark.asyncio
    async def test_request_logging_failure_reraises(self, mock_context):
        middleware = LoggingMiddleware()
        call_next = MockCall(exception=RemoteCommandError("hv01", "Export-VM", "disk full"))

        with pytest.raises(RemoteCommandError, match="disk full"):
            await middleware.on_message(mock_context, call_next)

    def test_tool_arguments_are_redacted(self, mock_context):
        middleware = LoggingMiddleware()

        sanitized = middleware._sanitize_message(mock_context.message)

        assert sanitized["name"] == "migrate_vm"
        assert sanitized["arguments"]["password"] == "[REDACTED]"
        assert sanitized["arguments"]["vm"] == "web01"

    def test_top_level_credentials_and_private_fields(self):
        middleware = LoggingMiddleware()
        message = SimpleNamespace(token="abc", _internal="x", retries=3)

        sanitized = middleware._sanitize_message(message)

        assert sanitized == {"token": "[REDACTED]", "retries": 3}

    def test_large_payload_truncation(self):
        middleware = LoggingMiddleware(max_payload_length=10)
        message = SimpleNamespace(arguments={"vm": "x" * 50, "mode": "offline"})

        sanitized = middleware._sanitize_message(message)

        assert sanitized["arguments"]["vm"] == "x" * 10 + "... [TRUNCATED]"
        assert sanitized["arguments"]["mode"] == "offline"

    @pytest.mark.asyncio
    async def test_payloads_can_be_disabled(self, mock_context):
        middleware = LoggingMiddleware(include_payloads=False)
        assert await middleware.on_message(mock_context, MockCall()) == {"status": "success"}


class TestErrorHandlingMiddleware:
    """Error statistics and categorization."""

    @pytest.mark.asyncio
    async def test_success_passes_through(self, mock_context):
        middleware = ErrorHandlingMiddleware()

        assert await middleware.on_message(mock_context, MockCall()) == {"status": "success"}
        assert middleware.get_error_statistics()["total_errors"] == 0

    @pytest.mark.asyncio
    async def test_errors_are_counted_and_reraised(self, mock_context):
        middleware = ErrorHandlingMiddleware()

        for _ in range(2):
            with pytest.raises(ConnectivityError):
                await middleware.on_message(
                    mock_context, MockCall(exception=ConnectivityError("hv02", "timed out"))
                )
        with pytest.raises(ValueError):
            await middleware.on_message(mock_context, MockCall(exception=ValueError("bad input")))

        stats = middleware.get_error_statistics()
        assert stats["total_errors"] == 3
        assert stats["unique_error_types"] == 2
        assert stats["top_errors"][0] == ("ConnectivityError:tools/call", 2)
        assert stats["errors_by_method"] == {"tools/call": 3}

    @pytest.mark.asyncio
    async def test_reset_statistics(self, mock_context):
        middleware = ErrorHandlingMiddleware()
        with pytest.raises(RuntimeError):
            await middleware.on_message(mock_context, MockCall(exception=RuntimeError("x")))

        middleware.reset_statistics()

        assert middleware.get_error_statistics()["total_errors"] == 0

    @pytest.mark.asyncio
    async def test_tracking_disabled(self, mock_context):
        middleware = ErrorHandlingMiddleware(track_error_stats=False)
        with pytest.raises(RuntimeError):
            await middleware.on_message(mock_context, MockCall(exception=RuntimeError("x")))

        assert middleware.get_error_statistics() == {"error_tracking": "disabled"}

    @pytest.mark.parametrize(
        "error,category",
        [
            (ConnectivityError("hv01", "refused"), "connectivity"),
            (PreconditionError("snapshot_present", "VM has checkpoints"), "precondition"),
            (ConfigurationError("hosts file missing"), "configuration"),
            (RemoteCommandError("hv01", "Import-VM", "failed"), "hyperv"),
            (KeyError("vm"), "internal"),
        ],
    )
    def test_categorize(self, error, category):
        assert ErrorHandlingMiddleware._categorize(error) == category
