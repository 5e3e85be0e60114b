"""
Tests for edgechat.backends (LocalBackend, CloudBackend and chunk helpers).

Covers:
  - Native streaming delivers chunks in order and returns their concatenation
  - Degraded streaming segments the full response at sentence boundaries
  - Async chunk callbacks are awaited before the next chunk
  - Accelerator delegate preference and silent CPU fallback
  - Engine closed when initialization fails or returns False
  - NotInitialized before initialize / after dispose
  - Cloud backend without a client
"""

from unittest.mock import AsyncMock, patch

import pytest

from edgechat.backends import (
    BackendKind,
    BackendOptions,
    CloudBackend,
    LocalBackend,
    split_into_chunks,
)
from edgechat.exceptions import (
    FallbackNotImplemented,
    InferenceFailure,
    InitializationFailure,
    NotInitialized,
)
from edgechat.protocols import ComputeDelegate

from .conftest import FakeCloudClient, FakeEngine, make_local

# ========================================================================
# Chunk helpers
# ========================================================================


class TestSplitIntoChunks:
    def test_sentences_concatenate_back(self):
        text = "Hello there. How are you? Fine!"
        chunks = split_into_chunks(text)
        assert chunks == ["Hello there.", " How are you?", " Fine!"]
        assert "".join(chunks) == text

    def test_no_boundary(self):
        assert split_into_chunks("just words") == ["just words"]

    def test_empty(self):
        assert split_into_chunks("") == []


# ========================================================================
# Local backend: initialization
# ========================================================================


class TestLocalInitialize:
    @pytest.mark.asyncio
    async def test_cpu_initialization(self, resolver):
        engine = FakeEngine()
        backend = make_local(engine, resolver)
        assert await backend.initialize()

        assert backend.is_ready
        assert backend.status == "Initialized (CPU)"
        config = engine.init_calls[-1]
        assert config.delegate is ComputeDelegate.CPU
        assert config.model_path == resolver.resolved_path

    @pytest.mark.asyncio
    async def test_accelerator_used_when_available(self, resolver):
        engine = FakeEngine()
        backend = make_local(engine, resolver)
        assert await backend.initialize(BackendOptions(use_accelerator=True))

        assert backend.status == "Initialized (GPU)"
        assert backend.handle.using_accelerator
        assert len(engine.init_calls) == 1

    @pytest.mark.asyncio
    async def test_accelerator_failure_falls_back_to_cpu(self, resolver):
        engine = FakeEngine(accelerator_fails=True)
        backend = make_local(engine, resolver)
        assert await backend.initialize(BackendOptions(use_accelerator=True))

        assert backend.status == "Initialized (CPU)"
        delegates = [config.delegate for config in engine.init_calls]
        assert delegates == [ComputeDelegate.ACCELERATOR, ComputeDelegate.CPU]

    @pytest.mark.asyncio
    async def test_accelerator_unavailable_skips_delegate(self, resolver):
        engine = FakeEngine(accelerator=False)
        backend = make_local(engine, resolver)
        await backend.initialize(BackendOptions(use_accelerator=True))
        assert [c.delegate for c in engine.init_calls] == [ComputeDelegate.CPU]

    @pytest.mark.asyncio
    async def test_false_result_closes_engine(self, resolver):
        engine = FakeEngine(init_result=False)
        backend = make_local(engine, resolver)
        assert await backend.initialize() is False
        assert engine.closed
        assert not backend.is_ready

    @pytest.mark.asyncio
    async def test_raised_error_closes_engine(self, resolver):
        engine = FakeEngine(fail_times=1)
        backend = make_local(engine, resolver)
        with pytest.raises(RuntimeError):
            await backend.initialize()
        assert engine.closed
        assert not backend.is_ready

    @pytest.mark.asyncio
    async def test_model_file_required_without_resolver(self):
        backend = LocalBackend(lambda: FakeEngine(), None, chunk_delay=0)
        with pytest.raises(InitializationFailure):
            await backend.initialize()

    @pytest.mark.asyncio
    async def test_engine_without_model_file_skips_resolver(self):
        engine = FakeEngine()
        engine.requires_model_file = False
        backend = LocalBackend(lambda: engine, None, chunk_delay=0)
        assert await backend.initialize()
        assert engine.init_calls[-1].model_path is None


# ========================================================================
# Local backend: generation
# ========================================================================


class TestLocalGeneration:
    @pytest.mark.asyncio
    async def test_native_streaming_order(self, resolver):
        backend = make_local(FakeEngine(chunks=("a", "b", "c")), resolver)
        await backend.initialize()
        chunks = []

        result = await backend.generate_stream("hi", chunks.append)

        assert chunks == ["a", "b", "c"]
        assert result == "abc"
        assert backend.supports_native_streaming

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self, resolver):
        backend = make_local(FakeEngine(chunks=("x", "y")), resolver)
        await backend.initialize()
        seen = []

        async def on_chunk(chunk):
            seen.append(chunk)

        assert await backend.generate_stream("hi", on_chunk) == "xy"
        assert seen == ["x", "y"]

    @pytest.mark.asyncio
    async def test_degraded_streaming_segments_response(self, resolver):
        engine = FakeEngine(streaming=False, response="One. Two? Three!")
        backend = make_local(engine, resolver)
        await backend.initialize()
        chunks = []

        result = await backend.generate_stream("hi", chunks.append)

        assert not backend.supports_native_streaming
        assert chunks == ["One.", " Two?", " Three!"]
        assert result == "One. Two? Three!"

    @pytest.mark.asyncio
    async def test_degraded_streaming_delays_only_between_chunks(self, resolver):
        engine = FakeEngine(streaming=False, response="One. Two? Three!")
        backend = make_local(engine, resolver, chunk_delay=0.5)
        await backend.initialize()
        chunks = []

        with patch("edgechat.backends.asyncio.sleep", new=AsyncMock()) as sleep:
            await backend.generate_stream("hi", lambda chunk: chunks.append((chunk, sleep.await_count)))

        assert chunks == [("One.", 0), (" Two?", 1), (" Three!", 2)]
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.5)

    @pytest.mark.asyncio
    async def test_generate(self, resolver):
        backend = make_local(FakeEngine(response="full reply"), resolver)
        await backend.initialize()
        assert await backend.generate("hi") == "full reply"

    @pytest.mark.asyncio
    async def test_engine_errors_wrapped(self, resolver):
        backend = make_local(FakeEngine(generate_error=ValueError("oops")), resolver)
        await backend.initialize()
        with pytest.raises(InferenceFailure):
            await backend.generate("hi")
        with pytest.raises(InferenceFailure):
            await backend.generate_stream("hi", lambda chunk: None)

    @pytest.mark.asyncio
    async def test_not_initialized(self, resolver):
        backend = make_local(FakeEngine(), resolver)
        with pytest.raises(NotInitialized):
            await backend.generate("hi")
        with pytest.raises(NotInitialized):
            await backend.generate_stream("hi", lambda chunk: None)

    @pytest.mark.asyncio
    async def test_dispose_is_idempotent(self, resolver):
        engine = FakeEngine()
        backend = make_local(engine, resolver)
        await backend.initialize()

        backend.dispose()
        backend.dispose()

        assert engine.closed
        assert backend.status == "Not Initialized"
        with pytest.raises(NotInitialized):
            await backend.generate("hi")


# ========================================================================
# Cloud backend
# ========================================================================


class TestCloudBackend:
    @pytest.mark.asyncio
    async def test_without_client_is_unavailable(self):
        backend = CloudBackend()
        assert backend.kind is BackendKind.CLOUD
        assert not backend.available
        assert await backend.initialize() is False
        with pytest.raises(FallbackNotImplemented):
            await backend.generate("hi")

    @pytest.mark.asyncio
    async def test_with_client_streams(self):
        backend = CloudBackend(FakeCloudClient(chunks=("a", "b")))
        with pytest.raises(NotInitialized):
            await backend.generate("hi")

        assert await backend.initialize()
        chunks = []
        assert await backend.generate_stream("hi", chunks.append) == "ab"
        assert chunks == ["a", "b"]

        backend.dispose()
        assert not backend.is_ready
