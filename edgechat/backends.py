"""
Inference backends.

A backend turns an engine (or a remote client) into the uniform capability the
orchestrator drives: all-or-nothing ``initialize``, ``generate``,
``generate_stream`` with strictly ordered chunk callbacks, and idempotent
``dispose``.
"""

from __future__ import annotations

import abc
import asyncio
import enum
import inspect
import logging
import re
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from .config import STREAM_CHUNK_DELAY_SECONDS
from .exceptions import (
    EdgeChatError,
    FallbackNotImplemented,
    InferenceFailure,
    InitializationFailure,
    NotInitialized,
)
from .protocols import ComputeDelegate, EngineConfig

if TYPE_CHECKING:
    from collections.abc import Callable

    from .assets import ModelPathResolver
    from .protocols import CloudClient, InferenceEngine

logger = logging.getLogger("edgechat")

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])(?=\s)")


class BackendKind(enum.Enum):
    LOCAL = "local"
    CLOUD = "cloud"


@dataclass(frozen=True)
class BackendOptions:
    use_accelerator: bool = False


@dataclass(frozen=True)
class BackendHandle:
    kind: BackendKind
    ready: bool = False
    using_accelerator: bool = False


def split_into_chunks(text: str) -> list[str]:
    """Split *text* at sentence boundaries; the chunks concatenate back to *text*."""
    return [piece for piece in _SENTENCE_BOUNDARY.split(text) if piece]


async def emit_chunk(on_chunk: Callable[[str], Any], chunk: str) -> None:
    """Deliver one chunk, awaiting async callbacks before the next is sent."""
    result = on_chunk(chunk)
    if inspect.isawaitable(result):
        await result


class InferenceBackend(abc.ABC):
    kind: BackendKind

    def __init__(self) -> None:
        self._ready = False
        self._using_accelerator = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def handle(self) -> BackendHandle:
        return BackendHandle(
            kind=self.kind, ready=self._ready, using_accelerator=self._using_accelerator
        )

    @property
    def status(self) -> str:
        if not self._ready:
            return "Not Initialized"
        return f"Initialized ({'GPU' if self._using_accelerator else 'CPU'})"

    @property
    @abc.abstractmethod
    def supports_native_streaming(self) -> bool: ...

    @abc.abstractmethod
    async def initialize(self, options: BackendOptions | None = None) -> bool: ...

    @abc.abstractmethod
    async def generate(self, text: str) -> str: ...

    @abc.abstractmethod
    async def generate_stream(self, text: str, on_chunk: Callable[[str], Any]) -> str: ...

    @abc.abstractmethod
    def dispose(self) -> None: ...


# ---------------------------------------------------------------------------
# Local
# ---------------------------------------------------------------------------


class LocalBackend(InferenceBackend):
    """On-device backend over an ``InferenceEngine``.

    ``engine_factory`` constructs the engine (loading its native library; may raise
    ``EngineLoadFailure``). When the engine cannot stream natively, responses are
    generated in full and re-emitted sentence by sentence with ``chunk_delay``
    between chunks.
    """

    kind = BackendKind.LOCAL

    def __init__(
        self,
        engine_factory: Callable[[], InferenceEngine],
        resolver: ModelPathResolver | None = None,
        *,
        engine_config: EngineConfig | None = None,
        chunk_delay: float = STREAM_CHUNK_DELAY_SECONDS,
    ) -> None:
        super().__init__()
        self._engine_factory = engine_factory
        self._resolver = resolver
        self._base_config = engine_config or EngineConfig()
        self._chunk_delay = chunk_delay
        self._engine: InferenceEngine | None = None

    @property
    def resolver(self) -> ModelPathResolver | None:
        return self._resolver

    @property
    def supports_native_streaming(self) -> bool:
        return bool(self._engine is not None and self._engine.supports_streaming)

    async def initialize(self, options: BackendOptions | None = None) -> bool:
        if self._ready:
            return True
        options = options or BackendOptions()

        engine = self._engine_factory()
        try:
            model_path = None
            if engine.requires_model_file:
                if self._resolver is None:
                    raise InitializationFailure(
                        "Engine requires a model file but no resolver is configured"
                    )
                model_path = await self._resolver.resolve()

            config = replace(
                self._base_config, model_path=model_path, delegate=ComputeDelegate.CPU
            )
            initialized, config = await self._initialize_engine(engine, config, options)
        except BaseException:
            _close_quietly(engine)
            raise

        if not initialized:
            _close_quietly(engine)
            logger.warning("[EdgeChat Local] Engine reported initialization failure.")
            return False

        self._engine = engine
        self._using_accelerator = config.using_accelerator
        self._ready = True
        logger.info(
            f"[EdgeChat Local] Initialized with {'accelerator' if config.using_accelerator else 'CPU'} delegate."
        )
        return True

    async def _initialize_engine(
        self, engine: InferenceEngine, config: EngineConfig, options: BackendOptions
    ) -> tuple[bool, EngineConfig]:
        if options.use_accelerator and self._accelerator_available(engine):
            accelerated = replace(config, delegate=ComputeDelegate.ACCELERATOR)
            try:
                if await engine.initialize(accelerated):
                    return True, accelerated
                logger.info("[EdgeChat Local] Accelerator delegate declined, using CPU.")
            except EdgeChatError:
                raise
            except Exception as e:
                logger.info(f"[EdgeChat Local] Accelerator delegate not available, using CPU: {e}")
        return await engine.initialize(config), config

    @staticmethod
    def _accelerator_available(engine: InferenceEngine) -> bool:
        try:
            return bool(engine.accelerator_available())
        except Exception as e:
            logger.info(f"[EdgeChat Local] Accelerator check failed, using CPU: {e}")
            return False

    def _require_engine(self) -> InferenceEngine:
        if not self._ready or self._engine is None:
            raise NotInitialized("Local backend not initialized. Call initialize() first.")
        return self._engine

    async def generate(self, text: str) -> str:
        engine = self._require_engine()
        try:
            return await engine.generate(text)
        except EdgeChatError:
            raise
        except Exception as e:
            raise InferenceFailure(f"Failed to generate response: {e}") from e

    async def generate_stream(self, text: str, on_chunk: Callable[[str], Any]) -> str:
        engine = self._require_engine()
        if not engine.supports_streaming:
            return await self._generate_segmented(text, on_chunk)

        parts: list[str] = []
        try:
            async for chunk in engine.generate_stream(text):
                if not chunk:
                    continue
                parts.append(chunk)
                await emit_chunk(on_chunk, chunk)
        except EdgeChatError:
            raise
        except Exception as e:
            raise InferenceFailure(f"Failed to generate streaming response: {e}") from e
        return "".join(parts)

    async def _generate_segmented(self, text: str, on_chunk: Callable[[str], Any]) -> str:
        full = await self.generate(text)
        for index, chunk in enumerate(split_into_chunks(full)):
            if index:
                await asyncio.sleep(self._chunk_delay)
            await emit_chunk(on_chunk, chunk)
        return full

    def dispose(self) -> None:
        engine, self._engine = self._engine, None
        self._ready = False
        self._using_accelerator = False
        if engine is not None:
            _close_quietly(engine)
            logger.info("[EdgeChat Local] Backend disposed.")

    def __repr__(self) -> str:
        return f"LocalBackend(status={self.status!r})"


# ---------------------------------------------------------------------------
# Cloud
# ---------------------------------------------------------------------------


class CloudBackend(InferenceBackend):
    """Remote backend. Without a ``CloudClient`` it is unavailable and never ready."""

    kind = BackendKind.CLOUD

    def __init__(self, client: CloudClient | None = None) -> None:
        super().__init__()
        self._client = client

    @property
    def available(self) -> bool:
        return self._client is not None

    @property
    def supports_native_streaming(self) -> bool:
        return self.available

    async def initialize(self, options: BackendOptions | None = None) -> bool:
        if self._client is None:
            logger.info("[EdgeChat Cloud] No cloud client configured; fallback unavailable.")
            return False
        self._ready = True
        return True

    def _require_client(self) -> CloudClient:
        if self._client is None:
            raise FallbackNotImplemented("Cloud fallback not implemented")
        if not self._ready:
            raise NotInitialized("Cloud backend not initialized. Call initialize() first.")
        return self._client

    async def generate(self, text: str) -> str:
        client = self._require_client()
        try:
            return await client.generate(text)
        except EdgeChatError:
            raise
        except Exception as e:
            raise InferenceFailure(f"Cloud generation failed: {e}") from e

    async def generate_stream(self, text: str, on_chunk: Callable[[str], Any]) -> str:
        client = self._require_client()
        parts: list[str] = []
        try:
            async for chunk in client.generate_stream(text):
                parts.append(chunk)
                await emit_chunk(on_chunk, chunk)
        except EdgeChatError:
            raise
        except Exception as e:
            raise InferenceFailure(f"Cloud streaming failed: {e}") from e
        return "".join(parts)

    def dispose(self) -> None:
        self._ready = False

    def __repr__(self) -> str:
        return f"CloudBackend(available={self.available}, ready={self._ready})"


def _close_quietly(engine: InferenceEngine) -> None:
    try:
        engine.close()
    except Exception:
        logger.warning("[EdgeChat Local] Error closing engine.", exc_info=True)
