"""
Shared test fixtures and fakes for edgechat.

The fakes implement the engine, asset-store and cloud-client protocols in memory,
with knobs for failure counts, delays and streaming chunks, so no native engine
or model file is needed.
"""

import asyncio

import pytest

from edgechat.assets import ModelAsset, ModelPathResolver
from edgechat.backends import CloudBackend, LocalBackend
from edgechat.exceptions import AssetNotFound
from edgechat.initialization import InitializationManager
from edgechat.orchestrator import BackendOrchestrator
from edgechat.protocols import EngineConfig

GGUF_PAYLOAD = b"GGUF" + b"\x00" * 60


class FakeEngine:
    """In-memory ``InferenceEngine``.

    ``fail_times`` initializations raise ``init_error`` before the engine succeeds;
    ``accelerator_fails`` makes accelerator-delegate initialization raise.
    """

    requires_model_file = True

    def __init__(
        self,
        *,
        streaming=True,
        chunks=("a", "b", "c"),
        response="Hello there. How are you?",
        fail_times=0,
        init_error=None,
        init_result=True,
        accelerator=True,
        accelerator_fails=False,
        generate_error=None,
    ):
        self.supports_streaming = streaming
        self.chunks = list(chunks)
        self.response = response
        self.fail_times = fail_times
        self.init_error = init_error or RuntimeError("engine init failed")
        self.init_result = init_result
        self.accelerator = accelerator
        self.accelerator_fails = accelerator_fails
        self.generate_error = generate_error
        self.init_calls = []
        self.closed = False

    def accelerator_available(self):
        return self.accelerator

    async def initialize(self, config: EngineConfig):
        self.init_calls.append(config)
        if config.using_accelerator and self.accelerator_fails:
            raise RuntimeError("delegate unavailable")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.init_error
        return self.init_result

    async def generate(self, text):
        if self.generate_error is not None:
            raise self.generate_error
        return self.response

    async def generate_stream(self, text):
        for chunk in self.chunks:
            await asyncio.sleep(0)
            yield chunk
        if self.generate_error is not None:
            raise self.generate_error

    def close(self):
        self.closed = True


class FakeAssetStore:
    """In-memory ``AssetStore`` that counts loads and can stall or fail them."""

    def __init__(self, assets=None, *, delay=0.0, fail_times=0):
        self.assets = dict(assets or {})
        self.delay = delay
        self.fail_times = fail_times
        self.loads = []

    async def exists(self, name):
        return name in self.assets

    async def load_asset(self, name):
        self.loads.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise OSError("transient read error")
        if name not in self.assets:
            raise AssetNotFound(f"Asset not found: {name}")
        return self.assets[name]


class FakeCloudClient:
    def __init__(self, chunks=("cloud ", "reply")):
        self.chunks = list(chunks)

    async def generate(self, text):
        return "".join(self.chunks)

    async def generate_stream(self, text):
        for chunk in self.chunks:
            yield chunk


@pytest.fixture
def asset():
    return ModelAsset("test-model")


@pytest.fixture
def store(asset):
    return FakeAssetStore({asset.asset_name("gguf"): GGUF_PAYLOAD})


@pytest.fixture
def resolver(asset, store, tmp_path):
    return ModelPathResolver(asset, store, tmp_path / "models", backoff_unit=0)


def make_local(engine, resolver, **kwargs):
    """LocalBackend whose factory always hands back *engine*."""
    kwargs.setdefault("chunk_delay", 0)
    return LocalBackend(lambda: engine, resolver, **kwargs)


def make_orchestrator(engine, resolver, cloud_client=None, **kwargs):
    kwargs.setdefault("backoff_unit", 0)
    return BackendOrchestrator(
        make_local(engine, resolver), CloudBackend(cloud_client), **kwargs
    )


@pytest.fixture
def manager():
    mgr = InitializationManager(max_retries=3, timeout=1.0, backoff_unit=0)
    yield mgr
    mgr.dispose()
