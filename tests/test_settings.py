"""Tests for configuration loading and the error payloads."""
from datetime import timedelta

import pytest
from pydantic import ValidationError

from vectorsearch.errors import DecodeError, UnsupportedContentTypeError, VectorSearchError
from vectorsearch.settings import AppSettings, Settings, load_settings


class TestSettings:
    def test_defaults(self):
        settings = AppSettings()
        assert settings.max_tokens_per_paragraph == 1000
        assert settings.overlap_tokens == 100
        assert settings.message_limit == 20
        assert settings.message_expiration_delta == timedelta(hours=1)

    def test_missing_file_yields_defaults(self, tmp_path):
        assert load_settings(tmp_path / "absent.yaml") == Settings()

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "app:\n  max_relevant_chunks: 8\n  use_full_text_search: true\n"
            "ai:\n  provider: anthropic\n  chat_model: claude-haiku-4-5\n"
            "cache:\n  backend: redis\n",
            encoding="utf-8",
        )

        settings = load_settings(path)

        assert settings.app.max_relevant_chunks == 8
        assert settings.app.use_full_text_search is True
        assert settings.ai.provider == "anthropic"
        assert settings.cache.backend == "redis"
        assert settings.app.message_limit == 20

    @pytest.mark.parametrize(
        "overrides",
        [
            {"overlap_tokens": 1000},
            {"max_output_tokens": 20000},
            {"max_tokens_per_line": 0},
        ],
    )
    def test_invalid_limits(self, overrides):
        with pytest.raises(ValidationError):
            AppSettings(**overrides)


class TestErrors:
    def test_base_error_payload(self):
        error = VectorSearchError("boom", details={"key": "value"})
        assert error.to_dict() == {
            "error": {
                "message": "boom",
                "code": "VectorSearchError",
                "status_code": 500,
                "details": {"key": "value"},
            }
        }

    def test_unsupported_content_type(self):
        error = UnsupportedContentTypeError("image/png", ["text/plain"])
        assert error.status_code == 400
        assert error.code == "UNSUPPORTED_CONTENT_TYPE"
        assert error.details == {"content_type": "image/png", "supported": ["text/plain"]}

    def test_decode_error(self):
        error = DecodeError("bad file", content_type="application/pdf")
        assert error.status_code == 422
        assert error.details["content_type"] == "application/pdf"
        assert isinstance(error, VectorSearchError)
