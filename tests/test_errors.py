"""Tests for tool_runtime.errors: taxonomy and transport error classification."""

import httpx
import pytest

from tool_runtime.errors import (
    ToolConnectionError,
    ToolProtocolError,
    ToolRateLimitError,
    ToolRuntimeError,
    ToolTimeoutError,
    ToolValidationError,
    format_timeout,
    wrap_error,
)


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


class TestHierarchy:
    @pytest.mark.parametrize("cls", [
        ToolConnectionError, ToolProtocolError, ToolTimeoutError,
        ToolRateLimitError, ToolValidationError,
    ])
    def test_all_subclass_base(self, cls):
        assert issubclass(cls, ToolRuntimeError)

    def test_timeout_is_builtin_timeout(self):
        err = ToolTimeoutError(10)
        assert isinstance(err, TimeoutError)
        assert str(err) == "Timeout (10s)"
        assert err.timeout_s == 10

    def test_fractional_timeout_message(self):
        assert format_timeout(0.5) == "Timeout (0.5s)"
        assert format_timeout(30.0) == "Timeout (30s)"

    def test_validation_is_value_error(self):
        err = ToolValidationError("missing", missing=["projectId"])
        assert isinstance(err, ValueError)
        assert err.missing == ["projectId"]

    def test_protocol_error_carries_remote_fields(self):
        err = ToolProtocolError("JSON-RPC Error -32601: nope", code=-32601, data={"x": 1})
        assert err.code == -32601
        assert err.data == {"x": 1}

    def test_rate_limit_message(self):
        err = ToolRateLimitError("tasks_filter", 10, window_s=2.0, threshold=10)
        assert "tasks_filter" in str(err)
        assert "10 times in 2 seconds" in str(err)
        assert err.call_count == 10
        assert err.tool_name == "tasks_filter"

    def test_original_preserved(self):
        cause = OSError("pipe")
        assert ToolConnectionError("x", original=cause).original is cause


# ---------------------------------------------------------------------------
# wrap_error
# ---------------------------------------------------------------------------


class TestWrapError:
    def test_passthrough(self):
        err = ToolProtocolError("x")
        assert wrap_error(err) is err

    def test_httpx_timeout(self):
        wrapped = wrap_error(httpx.ReadTimeout("slow"), timeout_s=30)
        assert isinstance(wrapped, ToolTimeoutError)
        assert str(wrapped) == "Timeout (30s)"

    def test_httpx_status(self):
        request = httpx.Request("POST", "http://x.test")
        response = httpx.Response(503, request=request)
        exc = httpx.HTTPStatusError("bad", request=request, response=response)
        wrapped = wrap_error(exc)
        assert isinstance(wrapped, ToolConnectionError)
        assert str(wrapped) == "HTTP 503: Service Unavailable"

    def test_httpx_connect_error(self):
        wrapped = wrap_error(httpx.ConnectError("refused"))
        assert isinstance(wrapped, ToolConnectionError)

    def test_builtin_timeout(self):
        assert isinstance(wrap_error(TimeoutError(), timeout_s=5), ToolTimeoutError)

    def test_os_error(self):
        assert isinstance(wrap_error(BrokenPipeError("gone")), ToolConnectionError)

    def test_unknown(self):
        wrapped = wrap_error(RuntimeError("weird"))
        assert type(wrapped) is ToolRuntimeError
        assert str(wrapped) == "weird"
