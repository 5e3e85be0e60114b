"""
Chat service: the surface a UI shell talks to.

``ChatService`` runs the orchestrator's initialization under an
``InitializationManager`` (timeout, retries, progress), routes generation to the
orchestrator, and re-initializes when accelerator or fallback settings change.
``build_service()`` wires the concrete pieces together from settings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from .assets import DirectoryAssetStore, ModelAsset, ModelPathResolver, describe_model_file
from .backends import CloudBackend, LocalBackend
from .cancellation import CancellationToken
from .config import DEFAULT_BACKEND_RETRY_BUDGET, EdgeChatSettings
from .engines import engine_factory as lookup_engine
from .initialization import InitializationManager, InitOutcome
from .orchestrator import BackendOrchestrator, OrchestratorState
from .protocols import EngineConfig

if TYPE_CHECKING:
    from collections.abc import Callable

    from .events import BroadcastStream
    from .initialization import InitializationProgress, InitializationState
    from .protocols import CloudClient, InferenceEngine

logger = logging.getLogger("edgechat")

SERVICE_NAME = "AI Services"


@dataclass(frozen=True)
class InitOptions:
    use_accelerator: bool = False
    use_fallback: bool = False
    retry_count: int = DEFAULT_BACKEND_RETRY_BUDGET

    @classmethod
    def from_settings(cls, settings: EdgeChatSettings) -> InitOptions:
        return cls(
            use_accelerator=settings.use_accelerator,
            use_fallback=settings.use_fallback,
            retry_count=settings.retry_count,
        )


class ChatService:
    def __init__(
        self,
        orchestrator: BackendOrchestrator,
        manager: InitializationManager,
        *,
        settings: EdgeChatSettings | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._manager = manager
        self._settings = settings or EdgeChatSettings()
        self._options = InitOptions.from_settings(self._settings)

    # -- State ---------------------------------------------------------------

    @property
    def orchestrator(self) -> BackendOrchestrator:
        return self._orchestrator

    @property
    def manager(self) -> InitializationManager:
        return self._manager

    @property
    def options(self) -> InitOptions:
        return self._options

    @property
    def state_stream(self) -> BroadcastStream[InitializationState]:
        return self._manager.state_stream

    @property
    def progress_stream(self) -> BroadcastStream[InitializationProgress]:
        return self._manager.progress_stream

    @property
    def is_initialized(self) -> bool:
        return self._manager.is_initialized and self._orchestrator.is_initialized

    @property
    def status_message(self) -> str:
        state = self._manager.current_state
        if state.is_ready and self._orchestrator.is_initialized:
            if self._orchestrator.state is OrchestratorState.FALLBACK_ACTIVE:
                return "Ready (cloud fallback)"
            return f"Ready ({self._orchestrator.primary.status})"
        return state.status_message

    # -- Initialization ------------------------------------------------------

    async def initialize(self, options: InitOptions | None = None) -> InitOutcome:
        """Initialize the backends. Concurrent calls get an ``ALREADY_RUNNING`` outcome."""
        if options is not None:
            self._options = options
        token = CancellationToken()
        return await self._manager.run_initialization(
            self._init_callable(token), SERVICE_NAME, cancel_token=token
        )

    async def retry(self) -> InitOutcome:
        """Start over after a failed initialization."""
        token = CancellationToken()
        return await self._manager.retry_initialization(
            self._init_callable(token), SERVICE_NAME, cancel_token=token
        )

    def cancel(self) -> bool:
        return self._manager.cancel()

    def _init_callable(self, token: CancellationToken) -> Callable[[], Any]:
        options = self._options

        async def init_fn() -> bool:
            return await self._orchestrator.initialize(
                use_accelerator=options.use_accelerator,
                use_fallback=options.use_fallback,
                retry_budget=options.retry_count,
                cancel_token=token,
                on_progress=self._manager.update_progress,
            )

        return init_fn

    async def set_accelerator(self, enabled: bool) -> InitOutcome | None:
        """Change the accelerator preference, re-initializing if already initialized."""
        return await self._apply_options(replace(self._options, use_accelerator=enabled))

    async def set_fallback(self, enabled: bool) -> InitOutcome | None:
        """Change the cloud fallback preference, re-initializing if already initialized."""
        return await self._apply_options(replace(self._options, use_fallback=enabled))

    async def _apply_options(self, options: InitOptions) -> InitOutcome | None:
        if options == self._options:
            return None
        self._options = options
        if not self._manager.is_initialized:
            return None
        logger.info(f"[EdgeChat Service] Settings changed ({options}); re-initializing.")
        self._orchestrator.dispose()
        self._manager.reset()
        return await self.initialize()

    # -- Generation ----------------------------------------------------------

    async def generate_response(self, text: str) -> str:
        if not text.strip():
            raise ValueError("text must not be empty")
        return await self._orchestrator.generate(text)

    async def generate_response_stream(self, text: str, on_chunk: Callable[[str], Any]) -> str:
        if not text.strip():
            raise ValueError("text must not be empty")
        return await self._orchestrator.generate_stream(text, on_chunk)

    # -- Diagnostics ---------------------------------------------------------

    def model_info(self) -> str:
        primary = self._orchestrator.primary
        resolver = getattr(primary, "resolver", None)
        if resolver is None:
            return "Model: provided by the engine (no model file)"
        if resolver.resolved_path is None:
            return f"Model not resolved yet: {resolver.asset.logical_name}"
        return describe_model_file(resolver.resolved_path)

    # -- Teardown ------------------------------------------------------------

    def dispose(self) -> None:
        self._manager.dispose()
        self._orchestrator.dispose()
        logger.info("[EdgeChat Service] Disposed.")

    def __repr__(self) -> str:
        return f"ChatService(status={self.status_message!r})"


def build_service(
    settings: EdgeChatSettings | None = None,
    *,
    engine_factory: Callable[[], InferenceEngine] | None = None,
    cloud_client: CloudClient | None = None,
) -> ChatService:
    """Wire a ``ChatService`` from *settings* (``EdgeChatSettings.from_env()`` by default)."""
    settings = settings or EdgeChatSettings.from_env()
    factory = engine_factory or lookup_engine(settings.engine)

    asset = ModelAsset(
        logical_name=settings.model_name,
        preferred_format=settings.preferred_format,
        fallback_format=settings.fallback_format,
    )
    resolver = ModelPathResolver(
        asset,
        DirectoryAssetStore(settings.asset_dir),
        settings.data_dir / "models",
        load_timeout=settings.asset_load_timeout,
        backoff_unit=settings.backoff_unit,
    )
    local = LocalBackend(
        factory,
        resolver,
        engine_config=EngineConfig(
            context_size=settings.context_size,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            system_prompt=settings.system_prompt,
        ),
        chunk_delay=settings.stream_chunk_delay,
    )
    orchestrator = BackendOrchestrator(
        local, CloudBackend(cloud_client), backoff_unit=settings.backoff_unit
    )
    manager = InitializationManager(
        max_retries=settings.init_max_retries,
        timeout=settings.init_timeout,
        backoff_unit=settings.backoff_unit,
    )
    return ChatService(orchestrator, manager, settings=settings)

