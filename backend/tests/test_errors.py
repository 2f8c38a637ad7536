"""
API エラー変換のテスト（サービス層の例外 → { "error": {...} }）
"""
import pytest

from ragdesk.core import errors
from ragdesk.core.errors import AppError, DocumentLoadError, DocumentNotFoundError, to_app_error
from ragdesk.llm.base import CircuitOpenError, GenerationError, LLMTimeoutError


class TestToAppError:
    @pytest.mark.parametrize(
        "exc, status_code, code",
        [
            (DocumentNotFoundError("doc-1"), 404, "NOT_FOUND"),
            (FileNotFoundError("missing"), 400, "INVALID_INPUT"),
            (DocumentLoadError("unsupported"), 400, "INVALID_INPUT"),
            (ValueError("blank"), 400, "INVALID_INPUT"),
            (LLMTimeoutError("slow", "generate"), 408, "TIMEOUT"),
            (CircuitOpenError("embed", 5.0), 503, "UNAVAILABLE"),
            (GenerationError("bad body", "generate"), 503, "UNAVAILABLE"),
            (RuntimeError("boom"), 500, "INTERNAL_ERROR"),
        ],
    )
    def test_mapping(self, exc, status_code, code):
        error = to_app_error(exc)

        assert error.status_code == status_code
        assert error.detail["error"]["code"] == code

    def test_app_error_passes_through(self):
        original = AppError("INVALID_INPUT", "bad")

        assert to_app_error(original) is original

    def test_only_used_helpers_are_exported(self):
        assert hasattr(errors, "raise_invalid_input")
        for name in ("raise_not_found", "raise_timeout", "raise_unavailable", "raise_internal_error"):
            assert not hasattr(errors, name)
