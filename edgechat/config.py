"""
edgechat configuration.

Defaults live as module-level constants; ``EdgeChatSettings.from_env()`` overlays
``EDGECHAT_*`` environment variables, and the CLI overlays its options on top.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path

DEFAULT_MODEL_NAME = "Llama-3.2-1B-Instruct-Q8_0"
DEFAULT_PREFERRED_FORMAT = "gguf"
DEFAULT_FALLBACK_FORMAT = "bin"

DEFAULT_INIT_MAX_RETRIES = 3
DEFAULT_INIT_TIMEOUT_SECONDS = 45.0
DEFAULT_BACKEND_RETRY_BUDGET = 3
BACKOFF_UNIT_SECONDS = 1.0

ASSET_LOAD_TIMEOUT_SECONDS = 30.0
ASSET_COPY_ATTEMPTS = 3

STREAM_CHUNK_DELAY_SECONDS = 0.1

SYSTEM_PROMPT = (
    "You are a helpful assistant running entirely on this device. "
    "Answer concisely and be explicit about uncertainty."
)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def default_data_dir() -> Path:
    return Path.home() / ".edgechat"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class EdgeChatSettings:
    data_dir: Path = field(default_factory=default_data_dir)
    asset_dir: Path = field(default_factory=lambda: Path("assets") / "models")
    engine: str = "llama"
    model_name: str = DEFAULT_MODEL_NAME
    preferred_format: str = DEFAULT_PREFERRED_FORMAT
    fallback_format: str = DEFAULT_FALLBACK_FORMAT
    use_accelerator: bool = False
    use_fallback: bool = False
    retry_count: int = DEFAULT_BACKEND_RETRY_BUDGET
    init_max_retries: int = DEFAULT_INIT_MAX_RETRIES
    init_timeout: float = DEFAULT_INIT_TIMEOUT_SECONDS
    asset_load_timeout: float = ASSET_LOAD_TIMEOUT_SECONDS
    backoff_unit: float = BACKOFF_UNIT_SECONDS
    stream_chunk_delay: float = STREAM_CHUNK_DELAY_SECONDS
    context_size: int = 2048
    max_tokens: int = 512
    temperature: float = 0.7
    system_prompt: str = SYSTEM_PROMPT

    def __post_init__(self) -> None:
        if self.retry_count <= 0:
            raise ValueError("retry_count must be > 0")
        if self.init_max_retries <= 0:
            raise ValueError("init_max_retries must be > 0")
        if self.init_timeout <= 0:
            raise ValueError("init_timeout must be > 0")
        if self.backoff_unit < 0:
            raise ValueError("backoff_unit must be >= 0")

    @classmethod
    def from_env(cls) -> EdgeChatSettings:
        defaults = cls()
        data_dir = os.environ.get("EDGECHAT_DATA_DIR")
        asset_dir = os.environ.get("EDGECHAT_ASSET_DIR")
        return cls(
            data_dir=Path(data_dir).expanduser() if data_dir else defaults.data_dir,
            asset_dir=Path(asset_dir).expanduser() if asset_dir else defaults.asset_dir,
            engine=os.environ.get("EDGECHAT_ENGINE", defaults.engine),
            model_name=os.environ.get("EDGECHAT_MODEL", defaults.model_name),
            use_accelerator=_env_bool("EDGECHAT_USE_ACCELERATOR", defaults.use_accelerator),
            use_fallback=_env_bool("EDGECHAT_USE_FALLBACK", defaults.use_fallback),
            retry_count=_env_int("EDGECHAT_RETRY_COUNT", defaults.retry_count),
            init_max_retries=_env_int("EDGECHAT_INIT_RETRIES", defaults.init_max_retries),
            init_timeout=_env_float("EDGECHAT_INIT_TIMEOUT", defaults.init_timeout),
            max_tokens=_env_int("EDGECHAT_MAX_TOKENS", defaults.max_tokens),
        )

    def with_overrides(self, **overrides: object) -> EdgeChatSettings:
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
