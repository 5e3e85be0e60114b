"""
EdgeChat: on-device chat orchestration.

Resolves a bundled model into app storage, brings a local inference backend up
with retries, timeouts and an optional cloud fallback, and streams generated
responses chunk by chunk. The native engines (llama-cpp-python, the Apple
Foundation Models SDK) are optional and loaded lazily.
"""

from .assets import DirectoryAssetStore, ModelAsset, ModelConverter, ModelPathResolver
from .backends import BackendHandle, BackendKind, BackendOptions, CloudBackend, InferenceBackend, LocalBackend
from .cancellation import CancellationToken
from .config import EdgeChatSettings
from .exceptions import EdgeChatError, EngineLoadFailure, ErrorKind, NotInitialized
from .initialization import (
    FailureReason,
    InitializationManager,
    InitializationProgress,
    InitializationState,
    InitOutcome,
    OutcomeStatus,
)
from .orchestrator import BackendOrchestrator, OrchestratorState
from .service import ChatService, InitOptions, build_service

__all__ = [
    "BackendHandle",
    "BackendKind",
    "BackendOptions",
    "BackendOrchestrator",
    "CancellationToken",
    "ChatService",
    "CloudBackend",
    "DirectoryAssetStore",
    "EdgeChatError",
    "EdgeChatSettings",
    "EngineLoadFailure",
    "ErrorKind",
    "FailureReason",
    "InferenceBackend",
    "InitOptions",
    "InitOutcome",
    "InitializationManager",
    "InitializationProgress",
    "InitializationState",
    "LocalBackend",
    "ModelAsset",
    "ModelConverter",
    "ModelPathResolver",
    "NotInitialized",
    "OrchestratorState",
    "OutcomeStatus",
    "build_service",
]
