"""
Backend orchestration.

``BackendOrchestrator`` owns a primary (local) backend and an optional fallback
(cloud) backend. It retries primary initialization with backoff, engages the
fallback when the primary is exhausted, escalates native-library load failures on
the final attempt, and routes generation to whichever backend is active.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from typing import TYPE_CHECKING, Any, NoReturn

from .backends import BackendOptions
from .cancellation import CancellationToken
from .config import BACKOFF_UNIT_SECONDS, DEFAULT_BACKEND_RETRY_BUDGET
from .exceptions import (
    EngineLoadFailure,
    FallbackNotImplemented,
    InferenceFailure,
    InitializationCancelled,
    NotInitialized,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from .backends import BackendHandle, InferenceBackend

logger = logging.getLogger("edgechat")


class OrchestratorState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING_PRIMARY = "initializing_primary"
    READY = "ready"
    FALLBACK_ACTIVE = "fallback_active"
    FAILED = "failed"


_ACTIVE_STATES = (OrchestratorState.READY, OrchestratorState.FALLBACK_ACTIVE)


class BackendOrchestrator:
    def __init__(
        self,
        primary: InferenceBackend,
        fallback: InferenceBackend | None = None,
        *,
        backoff_unit: float = BACKOFF_UNIT_SECONDS,
        serialize_generation: bool = False,
    ) -> None:
        self._primary = primary
        self._fallback = fallback
        self._backoff_unit = backoff_unit
        self._state = OrchestratorState.UNINITIALIZED
        self._use_fallback = False
        self._last_error: BaseException | None = None
        self._error_message = ""
        self._generation_lock = asyncio.Lock() if serialize_generation else None

    # -- Introspection -------------------------------------------------------

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._state in _ACTIVE_STATES

    @property
    def use_fallback(self) -> bool:
        return self._use_fallback

    @property
    def error_message(self) -> str:
        return self._error_message

    @property
    def last_error(self) -> BaseException | None:
        return self._last_error

    @property
    def primary(self) -> InferenceBackend:
        return self._primary

    @property
    def handles(self) -> tuple[BackendHandle, ...]:
        backends = [self._primary] if self._fallback is None else [self._primary, self._fallback]
        return tuple(backend.handle for backend in backends)

    @property
    def active_backend(self) -> InferenceBackend | None:
        if self._state is OrchestratorState.READY:
            return self._primary
        if self._state is OrchestratorState.FALLBACK_ACTIVE:
            return self._fallback
        return None

    # -- Initialization ------------------------------------------------------

    async def initialize(
        self,
        use_accelerator: bool = False,
        use_fallback: bool = False,
        retry_budget: int = DEFAULT_BACKEND_RETRY_BUDGET,
        *,
        cancel_token: CancellationToken | None = None,
        on_progress: Callable[[int, str], None] | None = None,
    ) -> bool:
        """Bring a backend to the ready state.

        Returns True once the primary (or the fallback) is ready and False when
        every option is exhausted.

        Raises:
            EngineLoadFailure: the native engine library failed to load on the final attempt.
            InitializationCancelled: *cancel_token* was cancelled at a suspension point.
        """
        if retry_budget <= 0:
            raise ValueError("retry_budget must be > 0")
        if self.is_initialized:
            return True

        token = cancel_token or CancellationToken()
        report = on_progress or (lambda percent, step: None)
        self._use_fallback = use_fallback
        self._last_error = None
        self._error_message = ""
        self._state = OrchestratorState.INITIALIZING_PRIMARY
        try:
            return await self._initialize_backends(
                BackendOptions(use_accelerator=use_accelerator), use_fallback, retry_budget, token, report
            )
        except asyncio.CancelledError:
            self._state = OrchestratorState.FAILED
            self._error_message = self._error_message or "Backend initialization was interrupted"
            logger.warning("[EdgeChat Orchestrator] Initialization interrupted.")
            raise

    async def _initialize_backends(
        self,
        options: BackendOptions,
        use_fallback: bool,
        retry_budget: int,
        token: CancellationToken,
        report: Callable[[int, str], None],
    ) -> bool:
        for attempt in range(1, retry_budget + 1):
            logger.info(f"[EdgeChat Orchestrator] Primary initialization attempt {attempt}/{retry_budget}")
            report(20, f"Loading local model (attempt {attempt}/{retry_budget})...")
            try:
                token.raise_if_cancelled()
                if await self._primary.initialize(options):
                    self._state = OrchestratorState.READY
                    report(90, "Local model ready")
                    logger.info(
                        f"[EdgeChat Orchestrator] Primary backend ready ({self._primary.status})."
                    )
                    return True
                self._record_failure(
                    RuntimeError("Primary backend initialization returned false")
                )
            except EngineLoadFailure as e:
                self._record_failure(e)
                logger.warning(
                    f"[EdgeChat Orchestrator] Native engine failed to load on attempt {attempt}: {e}"
                )
                if attempt >= retry_budget:
                    self._state = OrchestratorState.FAILED
                    raise
            except InitializationCancelled:
                self._state = OrchestratorState.FAILED
                raise
            except Exception as e:
                self._record_failure(e)
                logger.warning(
                    f"[EdgeChat Orchestrator] Primary initialization attempt {attempt} failed: {e}"
                )

            if attempt < retry_budget:
                if await token.sleep(self._backoff_unit * attempt):
                    self._state = OrchestratorState.FAILED
                    token.raise_if_cancelled()

        primary_message = (
            f"Primary backend failed to initialize after {retry_budget} attempts: "
            f"{self._error_message}"
        )

        if use_fallback:
            if token.cancelled:
                self._state = OrchestratorState.FAILED
                token.raise_if_cancelled()
            return await self._initialize_fallback(primary_message, report)

        self._error_message = primary_message
        self._state = OrchestratorState.FAILED
        return False

    async def _initialize_fallback(
        self, primary_message: str, report: Callable[[int, str], None]
    ) -> bool:
        self._state = OrchestratorState.FALLBACK_ACTIVE
        report(60, "Attempting cloud fallback...")
        logger.info("[EdgeChat Orchestrator] Attempting cloud fallback...")

        if self._fallback is None:
            ready = False
        else:
            try:
                ready = await self._fallback.initialize(BackendOptions())
            except Exception as e:
                logger.warning(f"[EdgeChat Orchestrator] Cloud fallback initialization failed: {e}")
                self._last_error = e
                ready = False

        if ready:
            report(90, "Cloud fallback ready")
            logger.info("[EdgeChat Orchestrator] Cloud fallback active.")
            return True

        self._error_message = f"{primary_message}; cloud fallback unavailable"
        self._state = OrchestratorState.FAILED
        return False

    def _record_failure(self, error: BaseException) -> None:
        self._last_error = error
        self._error_message = str(error) or type(error).__name__

    # -- Generation ----------------------------------------------------------

    def _require_active(self) -> InferenceBackend:
        backend = self.active_backend
        if backend is None:
            raise NotInitialized("No AI backend available. Call initialize() first.")
        return backend

    async def generate(self, text: str) -> str:
        backend = self._require_active()
        async with self._maybe_locked():
            try:
                return await backend.generate(text)
            except NotInitialized:
                raise
            except Exception as e:
                self._raise_generation_error("generate response", e)

    async def generate_stream(self, text: str, on_chunk: Callable[[str], Any]) -> str:
        backend = self._require_active()
        async with self._maybe_locked():
            try:
                return await backend.generate_stream(text, on_chunk)
            except NotInitialized:
                raise
            except Exception as e:
                self._raise_generation_error("generate streaming response", e)

    def _raise_generation_error(self, action: str, error: Exception) -> NoReturn:
        logger.error(f"[EdgeChat Orchestrator] Failed to {action}: {error}")
        if self._use_fallback:
            raise FallbackNotImplemented(f"Cloud fallback not implemented: {error}") from error
        if isinstance(error, InferenceFailure):
            raise error
        raise InferenceFailure(f"Failed to {action}: {error}") from error

    def _maybe_locked(self) -> contextlib.AbstractAsyncContextManager:
        if self._generation_lock is None:
            return contextlib.nullcontext()
        return self._generation_lock

    # -- Teardown ------------------------------------------------------------

    def dispose(self) -> None:
        for backend in (self._primary, self._fallback):
            if backend is None:
                continue
            try:
                backend.dispose()
            except Exception:
                logger.warning("[EdgeChat Orchestrator] Error disposing backend.", exc_info=True)
        self._state = OrchestratorState.UNINITIALIZED
        self._use_fallback = False
        self._last_error = None
        self._error_message = ""

    def __repr__(self) -> str:
        return f"BackendOrchestrator(state={self._state.value}, use_fallback={self._use_fallback})"
