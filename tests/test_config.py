"""
Tests for edgechat.config and edgechat.exceptions.

Covers:
  - Defaults and validation of EdgeChatSettings
  - EDGECHAT_* environment overrides
  - with_overrides ignores None
  - Error kinds, retryability and require_module install guidance
"""

from pathlib import Path
from unittest.mock import patch

import pytest

from edgechat.config import DEFAULT_INIT_TIMEOUT_SECONDS, EdgeChatSettings
from edgechat.exceptions import (
    EdgeChatError,
    EngineLoadFailure,
    ErrorKind,
    InferenceFailure,
    error_kind_of,
    require_module,
)


class TestSettings:
    def test_defaults(self):
        settings = EdgeChatSettings()
        assert settings.init_timeout == DEFAULT_INIT_TIMEOUT_SECONDS == 45.0
        assert settings.init_max_retries == 3
        assert settings.asset_load_timeout == 30.0
        assert settings.data_dir == Path.home() / ".edgechat"

    @pytest.mark.parametrize(
        "field, value",
        [("retry_count", 0), ("init_max_retries", 0), ("init_timeout", 0), ("backoff_unit", -1)],
    )
    def test_validation(self, field, value):
        with pytest.raises(ValueError):
            EdgeChatSettings(**{field: value})

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("EDGECHAT_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("EDGECHAT_ENGINE", "apple")
        monkeypatch.setenv("EDGECHAT_USE_ACCELERATOR", "yes")
        monkeypatch.setenv("EDGECHAT_INIT_TIMEOUT", "12.5")
        monkeypatch.setenv("EDGECHAT_RETRY_COUNT", "5")

        settings = EdgeChatSettings.from_env()

        assert settings.data_dir == tmp_path
        assert settings.engine == "apple"
        assert settings.use_accelerator is True
        assert settings.init_timeout == 12.5
        assert settings.retry_count == 5

    def test_from_env_rejects_garbage(self, monkeypatch):
        monkeypatch.setenv("EDGECHAT_INIT_RETRIES", "many")
        with pytest.raises(ValueError, match="EDGECHAT_INIT_RETRIES"):
            EdgeChatSettings.from_env()

    def test_with_overrides_skips_none(self):
        settings = EdgeChatSettings().with_overrides(model_name="tiny", engine=None)
        assert settings.model_name == "tiny"
        assert settings.engine == "llama"


class TestErrors:
    def test_kinds_and_retryability(self):
        assert EngineLoadFailure("x").kind is ErrorKind.ENGINE_LOAD
        assert EngineLoadFailure.retryable is False
        assert InferenceFailure.retryable is True
        assert error_kind_of(InferenceFailure("x")) is ErrorKind.INFERENCE
        assert error_kind_of(ValueError("x")) is None
        assert issubclass(EngineLoadFailure, EdgeChatError)

    def test_require_module_success(self):
        module = require_module("json", package="json", context="test")
        assert module.__name__ == "json"

    def test_require_module_missing(self):
        with patch("importlib.import_module", side_effect=ImportError("no module")):
            with pytest.raises(EngineLoadFailure) as excinfo:
                require_module("llama_cpp", package="llama-cpp-python", context="LlamaCppEngine")
        assert "pip install 'llama-cpp-python'" in str(excinfo.value)

    def test_require_module_shared_library_error(self):
        with patch("importlib.import_module", side_effect=OSError("dlopen failed")):
            with pytest.raises(EngineLoadFailure):
                require_module("llama_cpp", package="llama-cpp-python", context="LlamaCppEngine")

    def test_require_module_native_library_runtime_error(self):
        error = RuntimeError("Failed to load shared library 'libllama.so': undefined symbol")
        with patch("importlib.import_module", side_effect=error):
            with pytest.raises(EngineLoadFailure) as excinfo:
                require_module("llama_cpp", package="llama-cpp-python", context="LlamaCppEngine")
        assert excinfo.value.kind is ErrorKind.ENGINE_LOAD
        assert excinfo.value.__cause__ is error
