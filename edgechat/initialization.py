"""
Initialization state machine.

``InitializationManager`` drives an arbitrary zero-argument async initializer
through bounded retries, each attempt raced against a timeout, with linear backoff
between attempts. It publishes full state snapshots and fine-grained progress on
two independent broadcast streams and guarantees at most one in-flight attempt.

Outcomes are tagged (``SUCCEEDED``, ``FAILED`` with a reason, ``ALREADY_RUNNING``)
and truthy only on success, so callers that only care about "did it work" can keep
treating the result as a boolean.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from .cancellation import CancellationToken
from .config import BACKOFF_UNIT_SECONDS, DEFAULT_INIT_MAX_RETRIES, DEFAULT_INIT_TIMEOUT_SECONDS
from .events import BroadcastStream
from .exceptions import EdgeChatError, ErrorKind, InitializationTimeout, error_kind_of

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger("edgechat.init")


class InitPhase(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OutcomeStatus(enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ALREADY_RUNNING = "already_running"


class FailureReason(enum.Enum):
    TIMEOUT = "timeout"
    RETURNED_FALSE = "returned_false"
    RAISED = "raised"
    FATAL = "fatal"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class InitOutcome:
    status: OutcomeStatus
    reason: FailureReason | None = None
    message: str = ""
    error_kind: ErrorKind | None = None

    def __bool__(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED

    @property
    def already_running(self) -> bool:
        return self.status is OutcomeStatus.ALREADY_RUNNING


def format_elapsed(elapsed: timedelta) -> str:
    total = int(elapsed.total_seconds())
    minutes, seconds = divmod(total, 60)
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


@dataclass(frozen=True)
class InitializationState:
    is_initialized: bool = False
    is_initializing: bool = False
    failed: bool = False
    error_message: str = ""
    progress: int = 0
    current_step: str = ""
    retry_count: int = 0
    elapsed_time: timedelta = timedelta(0)
    error_kind: ErrorKind | None = None

    @property
    def is_ready(self) -> bool:
        return self.is_initialized and not self.is_initializing and not self.failed

    @property
    def formatted_elapsed_time(self) -> str:
        return format_elapsed(self.elapsed_time)

    @property
    def status_message(self) -> str:
        if self.is_initializing:
            return f"Initializing... ({self.formatted_elapsed_time})"
        if self.failed:
            return f"Failed: {self.error_message}"
        if self.is_initialized:
            return "Ready"
        return "Not initialized"


@dataclass(frozen=True)
class InitializationProgress:
    progress: int
    step: str
    timestamp: datetime


class InitializationManager:
    def __init__(
        self,
        *,
        max_retries: int = DEFAULT_INIT_MAX_RETRIES,
        timeout: float = DEFAULT_INIT_TIMEOUT_SECONDS,
        backoff_unit: float = BACKOFF_UNIT_SECONDS,
    ) -> None:
        if max_retries <= 0:
            raise ValueError("max_retries must be > 0")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self._max_retries = max_retries
        self._timeout = timeout
        self._backoff_unit = backoff_unit

        self._state_stream: BroadcastStream[InitializationState] = BroadcastStream("state")
        self._progress_stream: BroadcastStream[InitializationProgress] = BroadcastStream(
            "progress"
        )
        self._token = CancellationToken()
        self._attempt_task: asyncio.Future | None = None
        self._generation = 0
        self._reset_fields()

    def _reset_fields(self) -> None:
        self._phase = InitPhase.IDLE
        self._error_message = ""
        self._error_kind: ErrorKind | None = None
        self._progress = 0
        self._current_step = ""
        self._retry_count = 0
        self._started_at: float | None = None
        self._finished_at: float | None = None

    # -- Streams and state ---------------------------------------------------

    @property
    def state_stream(self) -> BroadcastStream[InitializationState]:
        return self._state_stream

    @property
    def progress_stream(self) -> BroadcastStream[InitializationProgress]:
        return self._progress_stream

    @property
    def current_state(self) -> InitializationState:
        return InitializationState(
            is_initialized=self._phase is InitPhase.SUCCEEDED,
            is_initializing=self._phase is InitPhase.RUNNING,
            failed=self._phase is InitPhase.FAILED,
            error_message=self._error_message,
            progress=self._progress,
            current_step=self._current_step,
            retry_count=self._retry_count,
            elapsed_time=self.elapsed_time,
            error_kind=self._error_kind,
        )

    @property
    def phase(self) -> InitPhase:
        return self._phase

    @property
    def is_initialized(self) -> bool:
        return self._phase is InitPhase.SUCCEEDED

    @property
    def is_initializing(self) -> bool:
        return self._phase is InitPhase.RUNNING

    @property
    def failed(self) -> bool:
        return self._phase is InitPhase.FAILED

    @property
    def error_message(self) -> str:
        return self._error_message

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def current_step(self) -> str:
        return self._current_step

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def cancel_token(self) -> CancellationToken:
        """Token of the current (or most recent) run."""
        return self._token

    @property
    def elapsed_time(self) -> timedelta:
        if self._started_at is None:
            return timedelta(0)
        end = self._finished_at if self._finished_at is not None else time.monotonic()
        return timedelta(seconds=end - self._started_at)

    # -- Running -------------------------------------------------------------

    async def run_initialization(
        self,
        init_fn: Callable[[], Awaitable[bool] | bool],
        name: str = "Services",
        *,
        max_retries: int | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> InitOutcome:
        """Run *init_fn* until it returns True, retrying with timeout and backoff.

        Args:
            init_fn: Zero-argument callable returning (an awaitable of) bool.
            name: Display name used in progress labels and logs.
            max_retries: Total attempts; defaults to the manager's setting.
            timeout: Seconds allowed per attempt; defaults to the manager's setting.
            cancel_token: Token the initializer observes; a fresh one is created if omitted.

        Returns:
            InitOutcome: ``ALREADY_RUNNING`` without calling *init_fn* if a run is in
            flight, ``SUCCEEDED`` immediately if a previous run succeeded.
        """
        if self._phase is InitPhase.RUNNING:
            logger.info(f"[EdgeChat Init] {name} initialization already running; ignoring call.")
            return InitOutcome(OutcomeStatus.ALREADY_RUNNING, message="Initialization in progress")
        if self._phase is InitPhase.SUCCEEDED:
            return InitOutcome(OutcomeStatus.SUCCEEDED)

        attempts = max_retries if max_retries is not None else self._max_retries
        if attempts <= 0:
            raise ValueError("max_retries must be > 0")
        per_attempt = timeout if timeout is not None else self._timeout
        if per_attempt <= 0:
            raise ValueError("timeout must be > 0")

        generation = self._generation
        self._token = cancel_token or CancellationToken()
        self._phase = InitPhase.RUNNING
        self._retry_count = 0
        self._progress = 0
        self._error_message = ""
        self._error_kind = None
        self._current_step = "Starting initialization..."
        self._started_at = time.monotonic()
        self._finished_at = None
        self._notify_state()
        self._notify_progress(0, self._current_step)

        try:
            while self._retry_count < attempts:
                self._retry_count += 1
                attempt = self._retry_count
                self._advance(10, f"Initializing {name} (attempt {attempt}/{attempts})...")

                reason, error = await self._run_attempt(init_fn, name, per_attempt)
                if generation != self._generation:
                    return self._disposed_outcome()
                if reason is None:
                    return self._succeed(name)

                message = _describe(error, reason)
                logger.warning(f"[EdgeChat Init] Initialization attempt {attempt} failed: {message}")
                final = attempt >= attempts or reason in (FailureReason.FATAL, FailureReason.CANCELLED)
                if final:
                    return self._fail(name, reason, message, _kind_of(error, reason))

                delay = self._backoff_unit * attempt
                self._advance(self._progress, f"Retrying in {delay:g}s...")
                if await self._token.sleep(delay):
                    if generation != self._generation:
                        return self._disposed_outcome()
                    return self._fail(
                        name, FailureReason.CANCELLED, self._token.reason, ErrorKind.CANCELLED
                    )
        except asyncio.CancelledError:
            if generation == self._generation:
                self._fail(name, FailureReason.CANCELLED, "Initialization cancelled", ErrorKind.CANCELLED)
            raise
        finally:
            if generation == self._generation:
                self._attempt_task = None

        return self._fail(
            name, FailureReason.RAISED, "Initialization retries exhausted", ErrorKind.INITIALIZATION
        )

    async def _run_attempt(
        self, init_fn: Callable[[], Awaitable[bool] | bool], name: str, timeout: float
    ) -> tuple[FailureReason | None, BaseException | None]:
        task = asyncio.ensure_future(asyncio.wait_for(_invoke(init_fn), timeout=timeout))
        self._attempt_task = task
        try:
            result = await task
        except TimeoutError:
            return FailureReason.TIMEOUT, InitializationTimeout(
                f"Initialization timeout: {name} did not complete within {timeout:g}s"
            )
        except asyncio.CancelledError:
            if self._token.cancelled:
                return FailureReason.CANCELLED, None
            raise
        except EdgeChatError as e:
            if e.kind is ErrorKind.CANCELLED:
                return FailureReason.CANCELLED, e
            return (FailureReason.RAISED if e.retryable else FailureReason.FATAL), e
        except Exception as e:
            return FailureReason.RAISED, e
        if not result:
            return FailureReason.RETURNED_FALSE, None
        return None, None

    def _succeed(self, name: str) -> InitOutcome:
        self._phase = InitPhase.SUCCEEDED
        self._error_message = ""
        self._error_kind = None
        self._progress = 100
        self._current_step = "Initialization completed"
        self._finished_at = time.monotonic()
        self._notify_state()
        self._notify_progress(100, self._current_step)
        logger.info(f"[EdgeChat Init] {name} initialized successfully in {format_elapsed(self.elapsed_time)}.")
        return InitOutcome(OutcomeStatus.SUCCEEDED)

    def _fail(
        self, name: str, reason: FailureReason, message: str, kind: ErrorKind | None
    ) -> InitOutcome:
        self._phase = InitPhase.FAILED
        self._error_message = message
        self._error_kind = kind
        self._progress = 0
        self._current_step = "Initialization failed"
        self._finished_at = time.monotonic()
        self._notify_state()
        self._notify_progress(0, self._current_step)
        logger.error(
            f"[EdgeChat Init] Failed to initialize {name} after {self._retry_count} attempt(s): {message}"
        )
        return InitOutcome(OutcomeStatus.FAILED, reason=reason, message=message, error_kind=kind)

    def _disposed_outcome(self) -> InitOutcome:
        return InitOutcome(
            OutcomeStatus.FAILED,
            reason=FailureReason.CANCELLED,
            message="Initialization manager disposed",
            error_kind=ErrorKind.CANCELLED,
        )

    async def retry_initialization(
        self,
        init_fn: Callable[[], Awaitable[bool] | bool],
        name: str = "Services",
        *,
        max_retries: int | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> InitOutcome:
        """Clear a previous failure and run the initializer again from attempt 1."""
        if self._phase is InitPhase.RUNNING:
            return InitOutcome(OutcomeStatus.ALREADY_RUNNING, message="Initialization in progress")
        self._retry_count = 0
        self._error_message = ""
        self._error_kind = None
        if self._phase is InitPhase.FAILED:
            self._phase = InitPhase.IDLE
        return await self.run_initialization(
            init_fn, name, max_retries=max_retries, timeout=timeout, cancel_token=cancel_token
        )

    # -- Progress ------------------------------------------------------------

    def update_progress(self, progress: int, step: str) -> None:
        """Report sub-phase progress from inside an initializer.

        While a run is in flight progress never moves backwards; lower values only
        update the step label.
        """
        progress = max(0, min(100, int(progress)))
        if self._phase is InitPhase.RUNNING:
            self._advance(progress, step)
            return
        self._progress = progress
        self._current_step = step
        self._notify_progress(progress, step)

    def _advance(self, progress: int, step: str) -> None:
        self._progress = max(self._progress, progress)
        self._current_step = step
        self._notify_progress(self._progress, step)

    def _notify_state(self) -> None:
        self._state_stream.emit(self.current_state)

    def _notify_progress(self, progress: int, step: str) -> None:
        self._progress_stream.emit(
            InitializationProgress(progress=progress, step=step, timestamp=datetime.now(UTC))
        )

    # -- Cancellation and teardown -------------------------------------------

    def cancel(self, reason: str = "Initialization cancelled") -> bool:
        """Cancel the in-flight run. Returns False when nothing is running."""
        if self._phase is not InitPhase.RUNNING:
            return False
        self._token.cancel(reason)
        task = self._attempt_task
        if task is not None and not task.done():
            task.cancel()
        return True

    def reset(self) -> None:
        """Return to ``IDLE``, abandoning any in-flight run. Streams stay open."""
        self.cancel("Initialization reset")
        self._generation += 1
        self._reset_fields()
        self._notify_state()

    def dispose(self) -> None:
        """Close both streams and reset all state. Safe to call repeatedly."""
        self.cancel("Initialization manager disposed")
        self._generation += 1
        self._state_stream.close()
        self._progress_stream.close()
        self._reset_fields()
        logger.debug("[EdgeChat Init] InitializationManager disposed")

    def __repr__(self) -> str:
        return (
            f"InitializationManager(phase={self._phase.value}, progress={self._progress}, "
            f"retry_count={self._retry_count})"
        )


async def _invoke(init_fn: Callable[[], Any]) -> bool:
    result = init_fn()
    if inspect.isawaitable(result):
        result = await result
    return bool(result)


def _describe(error: BaseException | None, reason: FailureReason) -> str:
    if error is not None:
        return str(error) or type(error).__name__
    if reason is FailureReason.RETURNED_FALSE:
        return "Initialization returned false"
    return "Initialization cancelled"


def _kind_of(error: BaseException | None, reason: FailureReason) -> ErrorKind:
    if reason is FailureReason.TIMEOUT:
        return ErrorKind.TIMEOUT
    if reason is FailureReason.CANCELLED:
        return ErrorKind.CANCELLED
    if error is not None:
        return error_kind_of(error) or ErrorKind.INITIALIZATION
    return ErrorKind.INITIALIZATION
