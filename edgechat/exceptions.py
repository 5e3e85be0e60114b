"""
Error taxonomy for edgechat.

Every error is tagged with an ``ErrorKind`` where it is raised, so callers (and the
UI shell) branch on ``exc.kind`` instead of inspecting message text.
"""

from __future__ import annotations

import enum
import importlib
from types import ModuleType


class ErrorKind(enum.Enum):
    ASSET_NOT_FOUND = "asset_not_found"
    ASSET_LOAD_TIMEOUT = "asset_load_timeout"
    ASSET_COPY = "asset_copy"
    ENGINE_LOAD = "engine_load"
    INITIALIZATION = "initialization"
    NOT_INITIALIZED = "not_initialized"
    INFERENCE = "inference"
    FALLBACK_UNAVAILABLE = "fallback_unavailable"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class EdgeChatError(RuntimeError):
    """Base class for all edgechat errors."""

    kind: ErrorKind = ErrorKind.INITIALIZATION
    retryable: bool = True


class AssetNotFound(EdgeChatError):
    kind = ErrorKind.ASSET_NOT_FOUND


class AssetLoadTimeout(EdgeChatError):
    kind = ErrorKind.ASSET_LOAD_TIMEOUT


class AssetCopyFailure(EdgeChatError):
    kind = ErrorKind.ASSET_COPY


class EngineLoadFailure(EdgeChatError):
    """The native inference library is missing or incompatible with this device.

    Retrying cannot help, so this error is never retried past the final attempt.
    """

    kind = ErrorKind.ENGINE_LOAD
    retryable = False


class InitializationFailure(EdgeChatError):
    kind = ErrorKind.INITIALIZATION


class InitializationTimeout(EdgeChatError):
    kind = ErrorKind.TIMEOUT


class InitializationCancelled(EdgeChatError):
    kind = ErrorKind.CANCELLED
    retryable = False


class NotInitialized(EdgeChatError):
    kind = ErrorKind.NOT_INITIALIZED
    retryable = False


class InferenceFailure(EdgeChatError):
    kind = ErrorKind.INFERENCE


class FallbackNotImplemented(EdgeChatError):
    """The cloud fallback was requested but no cloud capability is available."""

    kind = ErrorKind.FALLBACK_UNAVAILABLE
    retryable = False


def error_kind_of(exc: BaseException) -> ErrorKind | None:
    """Return the tagged kind of *exc*, or None for foreign exceptions."""
    if isinstance(exc, EdgeChatError):
        return exc.kind
    return None


def require_module(module_name: str, *, package: str, context: str) -> ModuleType:
    """Import an optional engine package, raising ``EngineLoadFailure`` with install guidance.

    ``OSError`` and ``RuntimeError`` raised while importing are treated the same as
    ``ImportError``: native bindings report shared-library load failures that way
    (llama-cpp-python raises ``RuntimeError("Failed to load shared library ...")``).
    """
    try:
        return importlib.import_module(module_name)
    except (ImportError, OSError, RuntimeError) as exc:
        raise EngineLoadFailure(
            f"[EdgeChat] {context} requires '{package}', which could not be loaded: {exc}\n"
            f"Install it with: pip install '{package}'"
        ) from exc
