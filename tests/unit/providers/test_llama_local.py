import asyncio

import pytest

from sanitizer.core.cancellation import CancellationToken, CancelledException
from sanitizer.core.errors import SanitizerTimeoutError, is_context_error
from sanitizer.core.models import ProviderSettings
from sanitizer.core.sessions import Session
from sanitizer.services.orchestrator import ChunkOrchestrator
from sanitizer.services.providers import LlamaCppProvider
from sanitizer.services.providers import llama_local


class FakeRuntime:
    def __init__(self, deltas=("Hello", " world"), n_ctx=4096, delay=0.0):
        self.deltas = list(deltas)
        self._n_ctx = n_ctx
        self.delay = delay
        self.is_loaded = False
        self.load_calls = 0
        self.requests: list[dict] = []
        self.shutdown_calls = 0

    async def ensure_loaded(self):
        self.load_calls += 1
        self.is_loaded = True

    def n_ctx(self):
        return self._n_ctx if self.is_loaded else None

    async def generate_stream(self, messages, cancel_token=None, max_tokens=512, **kwargs):
        self.requests.append({"messages": messages, "max_tokens": max_tokens})
        for delta in self.deltas:
            await asyncio.sleep(self.delay)
            yield delta

    def shutdown(self):
        self.shutdown_calls += 1


@pytest.mark.asyncio
async def test_call_loads_model_and_streams():
    runtime = FakeRuntime()
    provider = LlamaCppProvider(ProviderSettings(verbosity="short"), runtime=runtime)
    statuses, deltas = [], []

    result = await provider.call(
        "article", "prompt",
        on_status=lambda m, p: statuses.append(m),
        on_update=deltas.append,
    )

    assert result.content == "Hello world"
    assert deltas == ["Hello", " world"]
    assert statuses == ["Loading on-device model..."]
    assert runtime.requests[0]["max_tokens"] == 256
    assert runtime.requests[0]["messages"][0] == {"role": "system", "content": "prompt"}


@pytest.mark.asyncio
async def test_context_length_comes_from_loaded_model():
    runtime = FakeRuntime(n_ctx=8192)
    provider = LlamaCppProvider(runtime=runtime)

    assert await provider.resolve_context_length() == 8192
    assert runtime.load_calls == 1

    declared = LlamaCppProvider(ProviderSettings(context_length=1024), runtime=FakeRuntime())
    assert await declared.resolve_context_length() == 1024


@pytest.mark.asyncio
async def test_cancellation_during_generation():
    runtime = FakeRuntime(deltas=["a", "b", "c"], delay=0.01)
    provider = LlamaCppProvider(runtime=runtime)
    token = CancellationToken()

    def on_update(delta):
        token.cancel()

    with pytest.raises(CancelledException):
        await provider.call("article", "prompt", on_update=on_update, token=token)


@pytest.mark.asyncio
async def test_request_timeout():
    runtime = FakeRuntime(delay=1)
    provider = LlamaCppProvider(ProviderSettings(request_timeout=0.05), runtime=runtime)

    with pytest.raises(SanitizerTimeoutError, match="on-device model"):
        await provider.call("article", "prompt")


@pytest.mark.asyncio
async def test_shared_runtime_survives_destroy():
    runtime = FakeRuntime()
    provider = LlamaCppProvider(runtime=runtime)

    await provider.destroy()
    await provider.destroy()

    assert provider.is_destroyed
    assert runtime.shutdown_calls == 0


@pytest.mark.asyncio
async def test_availability_requires_library(monkeypatch):
    monkeypatch.setattr(llama_local.importlib.util, "find_spec", lambda name: None)

    availability = await LlamaCppProvider.check_availability()

    assert not availability.available
    assert "llama-cpp-python is not installed" in availability.reason


@pytest.mark.asyncio
async def test_availability_requires_model_file(monkeypatch, tmp_path):
    monkeypatch.setattr(llama_local.importlib.util, "find_spec", lambda name: object())
    missing = tmp_path / "missing.gguf"
    present = tmp_path / "model.gguf"
    present.write_bytes(b"GGUF")

    unavailable = await LlamaCppProvider.check_availability(ProviderSettings(model_path=str(missing)))
    available = await LlamaCppProvider.check_availability(ProviderSettings(model_path=str(present)))

    assert not unavailable.available
    assert unavailable.reason.startswith(f"Model file not found: {missing}")
    assert available.available


class StubLlama:
    """Stands in for ``llama_cpp.Llama`` with scripted streaming output."""

    def __init__(self, pieces=("Hello", " world"), n_ctx=4096, max_input=None):
        self.pieces = list(pieces)
        self._n_ctx = n_ctx
        self.max_input = max_input
        self.requests: list[dict] = []
        self.closed_streams = 0

    def n_ctx(self):
        return self._n_ctx

    def create_chat_completion(self, messages, stream, temperature, max_tokens):
        assert stream is True
        self.requests.append({"messages": messages, "max_tokens": max_tokens})
        text = messages[-1]["content"]

        def chunks():
            try:
                if self.max_input is not None and len(text) > self.max_input:
                    raise ValueError(
                        f"Requested tokens ({len(text)}) exceed context window of {self.max_input}"
                    )
                yield {"choices": [{"delta": {"role": "assistant"}}]}
                for piece in self.pieces:
                    yield {"choices": [{"delta": {"content": piece}}]}
            finally:
                self.closed_streams += 1

        return chunks()


@pytest.fixture
def loaded_runtime():
    runtime = llama_local.LlamaRuntime(model_path="unused.gguf", context_length=4096)
    runtime._llm = StubLlama()
    yield runtime
    runtime.shutdown()


def drain_worker(runtime):
    """Wait until every job queued on the worker thread has run."""
    runtime._executor.submit(lambda: None).result(timeout=1)


MESSAGES = [{"role": "system", "content": "prompt"}, {"role": "user", "content": "article"}]


@pytest.mark.asyncio
async def test_runtime_streams_through_worker_thread(loaded_runtime):
    deltas = [d async for d in loaded_runtime.generate_stream(MESSAGES, max_tokens=256)]
    drain_worker(loaded_runtime)

    assert deltas == ["Hello", " world"]
    assert loaded_runtime._llm.requests[0]["max_tokens"] == 256
    assert loaded_runtime._llm.closed_streams == 1


@pytest.mark.asyncio
async def test_runtime_stops_when_token_cancelled(loaded_runtime):
    loaded_runtime._llm.pieces = ["a", "b", "c"]
    token = CancellationToken()
    deltas = []

    with pytest.raises(CancelledException):
        async for delta in loaded_runtime.generate_stream(MESSAGES, token):
            deltas.append(delta)
            token.cancel()
    drain_worker(loaded_runtime)

    assert deltas == ["a"]
    assert loaded_runtime._llm.closed_streams == 1


@pytest.mark.asyncio
async def test_abandoned_stream_is_closed_on_worker(loaded_runtime):
    loaded_runtime._llm.pieces = ["a", "b", "c"]

    stream = loaded_runtime.generate_stream(MESSAGES)
    assert await stream.__anext__() == "a"
    await stream.aclose()
    drain_worker(loaded_runtime)

    assert loaded_runtime._llm.closed_streams == 1


@pytest.mark.asyncio
async def test_provider_on_loaded_runtime(loaded_runtime):
    provider = LlamaCppProvider(ProviderSettings(verbosity="detailed"), runtime=loaded_runtime)
    deltas = []

    assert await provider.resolve_context_length() == 4096
    result = await provider.call("article", "prompt", on_update=deltas.append)

    assert result.content == "Hello world"
    assert deltas == ["Hello", " world"]
    assert loaded_runtime._llm.requests[0]["max_tokens"] == 1024


@pytest.mark.asyncio
async def test_overflow_from_model_is_a_context_error(loaded_runtime):
    loaded_runtime._llm.max_input = 5
    provider = LlamaCppProvider(runtime=loaded_runtime)

    with pytest.raises(ValueError, match="exceed context window") as exc_info:
        await provider.call("a long article", "prompt")
    assert is_context_error(exc_info.value)


@pytest.mark.asyncio
async def test_overflow_on_device_recovers_by_halving(loaded_runtime):
    loaded_runtime._llm.max_input = 2000
    loaded_runtime._llm.pieces = ["ok"]
    provider = LlamaCppProvider(ProviderSettings(context_length=2048), runtime=loaded_runtime)
    text = "A" * 1400 + " " + "B" * 1400

    result = await ChunkOrchestrator().run(Session(session_id="tab-1"), provider, text, "")

    sent = [r["messages"][-1]["content"] for r in loaded_runtime._llm.requests]
    assert sent == [text, "A" * 1400, "B" * 1400]
    assert result.content == "okok"


def test_release_and_shutdown_unload_model():
    runtime = llama_local.LlamaRuntime(model_path="unused.gguf")
    runtime._llm = StubLlama()

    runtime.release()
    assert not runtime.is_loaded
    assert runtime.n_ctx() is None

    runtime._llm = StubLlama()
    runtime.shutdown()
    assert not runtime.is_loaded
    with pytest.raises(RuntimeError):
        runtime._executor.submit(lambda: None)


@pytest.mark.asyncio
async def test_owned_runtime_is_shut_down_on_destroy():
    provider = LlamaCppProvider(ProviderSettings(model_path="unused.gguf"))
    provider._runtime._llm = StubLlama()

    await provider.destroy()

    assert not provider._runtime.is_loaded
