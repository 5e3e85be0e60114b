"""
Concrete on-device engines.

Both engines import their native bindings lazily at construction, so a missing or
incompatible library surfaces as ``EngineLoadFailure`` from the engine factory
rather than as an import error of edgechat itself.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .exceptions import InitializationFailure, NotInitialized, require_module

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from .protocols import EngineConfig, InferenceEngine

logger = logging.getLogger("edgechat")

_END_OF_STREAM = object()


class LlamaCppEngine:
    """GGUF models through llama-cpp-python. The accelerator delegate offloads all layers."""

    supports_streaming = True
    requires_model_file = True

    def __init__(self) -> None:
        self._llama_cpp = require_module(
            "llama_cpp", package="llama-cpp-python", context="LlamaCppEngine"
        )
        self._llm: Any = None
        self._config: EngineConfig | None = None

    def accelerator_available(self) -> bool:
        supports_offload = getattr(self._llama_cpp, "llama_supports_gpu_offload", None)
        return bool(supports_offload()) if callable(supports_offload) else False

    async def initialize(self, config: EngineConfig) -> bool:
        if config.model_path is None:
            raise InitializationFailure("LlamaCppEngine requires a model path")
        loop = asyncio.get_running_loop()
        self._llm = await loop.run_in_executor(None, self._load, config)
        self._config = config
        return True

    def _load(self, config: EngineConfig) -> Any:
        logger.info(f"[EdgeChat llama.cpp] Loading model: {config.model_path}")
        return self._llama_cpp.Llama(
            model_path=str(config.model_path),
            n_ctx=config.context_size,
            n_gpu_layers=-1 if config.using_accelerator else 0,
            verbose=False,
        )

    def _messages(self, text: str) -> list[dict[str, str]]:
        messages = []
        if self._config is not None and self._config.system_prompt:
            messages.append({"role": "system", "content": self._config.system_prompt})
        messages.append({"role": "user", "content": text})
        return messages

    def _completion_kwargs(self) -> dict[str, Any]:
        assert self._config is not None
        return {"max_tokens": self._config.max_tokens, "temperature": self._config.temperature}

    async def generate(self, text: str) -> str:
        if self._llm is None:
            raise NotInitialized("LlamaCppEngine not initialized")
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(
            None,
            lambda: self._llm.create_chat_completion(
                messages=self._messages(text), stream=False, **self._completion_kwargs()
            ),
        )
        return response["choices"][0]["message"]["content"] or ""

    async def generate_stream(self, text: str) -> AsyncIterator[str]:
        if self._llm is None:
            raise NotInitialized("LlamaCppEngine not initialized")
        loop = asyncio.get_running_loop()
        stream = await loop.run_in_executor(
            None,
            lambda: self._llm.create_chat_completion(
                messages=self._messages(text), stream=True, **self._completion_kwargs()
            ),
        )
        iterator = iter(stream)
        while True:
            chunk = await loop.run_in_executor(None, next, iterator, _END_OF_STREAM)
            if chunk is _END_OF_STREAM:
                break
            content = chunk["choices"][0].get("delta", {}).get("content", "")
            if content:
                yield content

    def close(self) -> None:
        llm, self._llm = self._llm, None
        if llm is not None and hasattr(llm, "close"):
            llm.close()


class AppleFMEngine:
    """Apple Foundation Models system model (Neural Engine). Uses no model file."""

    supports_streaming = True
    requires_model_file = False

    def __init__(self) -> None:
        self._fm = require_module("apple_fm_sdk", package="apple-fm-sdk", context="AppleFMEngine")
        self._model: Any = None
        self._instructions = ""

    def accelerator_available(self) -> bool:
        return True

    async def initialize(self, config: EngineConfig) -> bool:
        model = self._fm.SystemLanguageModel()
        is_available, reason = model.is_available()
        if not is_available:
            logger.warning(f"[EdgeChat AppleFM] Foundation Model is not available: {reason}")
            return False
        self._model = model
        self._instructions = config.system_prompt
        return True

    def _session(self) -> Any:
        if self._model is None:
            raise NotInitialized("AppleFMEngine not initialized")
        return self._fm.LanguageModelSession(model=self._model, instructions=self._instructions)

    async def generate(self, text: str) -> str:
        session = self._session()
        return str(await session.respond(text))

    async def generate_stream(self, text: str) -> AsyncIterator[str]:
        session = self._session()
        previous = ""
        # The SDK streams cumulative snapshots; convert them to deltas.
        async for snapshot in session.stream_response(text):
            current = str(snapshot)
            delta = current[len(previous) :] if current.startswith(previous) else current
            previous = current
            if delta:
                yield delta

    def close(self) -> None:
        self._model = None


ENGINES: dict[str, Callable[[], InferenceEngine]] = {
    "llama": LlamaCppEngine,
    "apple": AppleFMEngine,
}


def engine_factory(name: str) -> Callable[[], InferenceEngine]:
    try:
        return ENGINES[name]
    except KeyError:
        raise ValueError(
            f"Unknown engine '{name}'. Expected one of: {', '.join(sorted(ENGINES))}"
        ) from None
