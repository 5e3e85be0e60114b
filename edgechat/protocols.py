"""
Boundary contracts for the collaborators edgechat drives but does not implement:
the inference engine, the bundled asset store and the cloud generation client.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class ComputeDelegate(enum.Enum):
    CPU = "cpu"
    ACCELERATOR = "accelerator"


@dataclass(frozen=True)
class EngineConfig:
    """What an engine needs to initialize.

    ``model_path`` is None for engines that ship their own system model.
    """

    model_path: Path | None = None
    delegate: ComputeDelegate = ComputeDelegate.CPU
    context_size: int = 2048
    max_tokens: int = 512
    temperature: float = 0.7
    system_prompt: str = ""

    @property
    def using_accelerator(self) -> bool:
        return self.delegate is ComputeDelegate.ACCELERATOR


@runtime_checkable
class InferenceEngine(Protocol):
    """Opaque on-device text generation engine.

    Constructing an engine loads its native library and may raise
    ``EngineLoadFailure``.
    """

    supports_streaming: bool
    requires_model_file: bool

    def accelerator_available(self) -> bool: ...

    async def initialize(self, config: EngineConfig) -> bool: ...

    async def generate(self, text: str) -> str: ...

    def generate_stream(self, text: str) -> AsyncIterator[str]: ...

    def close(self) -> None: ...


@runtime_checkable
class AssetStore(Protocol):
    """Read-only bundle of packaged assets (the app bundle on a device)."""

    async def exists(self, name: str) -> bool: ...

    async def load_asset(self, name: str) -> bytes: ...


@runtime_checkable
class CloudClient(Protocol):
    """Remote generative-text capability. No implementation ships with edgechat."""

    async def generate(self, text: str) -> str: ...

    def generate_stream(self, text: str) -> AsyncIterator[str]: ...
