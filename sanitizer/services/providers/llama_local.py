"""On-device provider backed by llama.cpp - model persistent in VRAM."""
import asyncio
import gc
import importlib.util
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import AsyncGenerator, Generator, Optional

import torch

from sanitizer.core.cancellation import (
    CancellationToken,
    CancelledException,
    ProcessingPhase,
    iterate_with_token,
    race_with_token,
    with_timeout,
)
from sanitizer.core.config import config
from sanitizer.core.models import (
    Availability,
    CallResult,
    ProviderSettings,
    StatusCallback,
    UpdateCallback,
)
from sanitizer.services.prompts import Verbosity, parse_verbosity
from sanitizer.services.providers.base import Provider

logger = logging.getLogger(__name__)

# Generation length cap per verbosity level (tokens)
VERBOSITY_MAX_TOKENS = {
    Verbosity.SHORT: 256,
    Verbosity.MEDIUM: 512,
    Verbosity.DETAILED: 1024,
}


class LlamaRuntime:
    """
    llama.cpp model holder shared across requests.

    Model is loaded once and kept in VRAM until ``release()`` so later
    sessions skip the load.
    """

    def __init__(
        self,
        model_path: str | None = None,
        context_length: int | None = None,
        load_on_init: bool = False,
    ):
        self._model_path = model_path or config.models.get_llm_path()
        self._context_length = context_length or config.local_context_length
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="llama")
        self._lock = asyncio.Lock()
        self._llm = None

        if load_on_init:
            self._load_model()

    @property
    def model_path(self) -> str:
        return self._model_path

    @property
    def is_loaded(self) -> bool:
        return self._llm is not None

    def _load_model(self) -> None:
        """Load model into VRAM (called in worker thread)."""
        if self._llm is not None:
            return

        from llama_cpp import Llama

        logger.info("Loading llama.cpp model from %s", self._model_path)
        self._llm = Llama(
            model_path=self._model_path,
            n_gpu_layers=-1,
            n_ctx=self._context_length,
            n_batch=config.llm_batch_size,
            n_ubatch=config.llm_ubatch_size,
            verbose=False,
        )

    async def ensure_loaded(self) -> None:
        """Load the model without blocking the event loop."""
        if self._llm is not None:
            return
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(self._executor, self._load_model)

    def n_ctx(self) -> Optional[int]:
        """Exact context size of the loaded model."""
        if self._llm is None:
            return None
        return self._llm.n_ctx()

    def _generate_sync(
        self,
        messages: list[dict],
        cancel_token: Optional[CancellationToken],
        max_tokens: int,
        temperature: float = 0.2,
    ) -> Generator[str, None, None]:
        """Synchronous streaming generation with cancellation support."""
        if cancel_token and cancel_token.is_cancelled:
            raise CancelledException("Cancelled before generation")

        output = self._llm.create_chat_completion(
            messages=messages,
            stream=True,
            temperature=temperature,
            max_tokens=max_tokens,
        )

        try:
            for chunk in output:
                if cancel_token and cancel_token.is_cancelled:
                    raise CancelledException("Cancelled during generation")

                if "choices" in chunk:
                    delta = chunk["choices"][0].get("delta", {})
                    content = delta.get("content", "")
                    if content:
                        yield content
        finally:
            # Stops llama.cpp decoding when the consumer goes away
            output.close()

    async def generate_stream(
        self,
        messages: list[dict],
        cancel_token: Optional[CancellationToken] = None,
        max_tokens: int = 512,
        **kwargs,
    ) -> AsyncGenerator[str, None]:
        """Generate streaming response, one executor hop per token batch."""
        async with self._lock:
            loop = asyncio.get_event_loop()

            def _safe_next(g):
                try:
                    return next(g)
                except StopIteration:
                    return None

            gen = self._generate_sync(messages, cancel_token, max_tokens, **kwargs)
            try:
                while True:
                    chunk = await loop.run_in_executor(self._executor, _safe_next, gen)
                    if chunk is None:
                        break
                    yield chunk
            finally:
                # Closed on the worker thread, after any in-flight next()
                self._executor.submit(gen.close)

    def release(self) -> None:
        """Release model from VRAM."""
        if self._llm is not None:
            del self._llm
            self._llm = None
            gc.collect()
            if torch.cuda.is_available():
                torch.cuda.empty_cache()

    def shutdown(self) -> None:
        """Release the model and stop the worker thread."""
        self.release()
        self._executor.shutdown(wait=False)


class LlamaCppProvider(Provider):
    """
    On-device backend running a local GGUF model through llama.cpp.

    The context length is known exactly from the loaded model. A runtime
    handed in by the host is shared and left loaded on destroy(); a runtime
    created here is released with the provider.
    """

    id = "llama-cpp"
    label = "On-device llama.cpp (GGUF)"
    DEFAULT_CONTEXT_LENGTH = config.local_context_length

    def __init__(self, settings: ProviderSettings | None = None, runtime: LlamaRuntime | None = None):
        super().__init__(settings)
        self._owns_runtime = runtime is None
        self._runtime = runtime or LlamaRuntime(
            model_path=self.settings.model_path,
            context_length=self.settings.context_length,
        )

    @classmethod
    async def check_availability(cls, settings: ProviderSettings | None = None) -> Availability:
        if importlib.util.find_spec("llama_cpp") is None:
            return Availability(
                available=False,
                reason="llama-cpp-python is not installed. "
                       "Install it to run models on this device.",
            )

        model_path = (settings and settings.model_path) or config.models.get_llm_path()
        if not Path(model_path).is_file():
            return Availability(
                available=False,
                reason=f"Model file not found: {model_path}. "
                       "Download a GGUF model or set the model path in settings.",
            )
        return Availability(available=True)

    async def detect_context_length(self) -> Optional[int]:
        await self._runtime.ensure_loaded()
        return self._runtime.n_ctx()

    async def _stream(
        self,
        messages: list[dict],
        on_update: Optional[UpdateCallback],
        token: Optional[CancellationToken],
    ) -> str:
        max_tokens = VERBOSITY_MAX_TOKENS[parse_verbosity(self.settings.verbosity)]
        content = ""
        stream = self._runtime.generate_stream(messages, token, max_tokens=max_tokens)
        try:
            async for delta in iterate_with_token(stream, token):
                content += delta
                if on_update:
                    on_update(delta)
        finally:
            await stream.aclose()
        if token:
            token.check_cancelled()
        return content

    async def call(
        self,
        text: str,
        prompt: str,
        on_status: Optional[StatusCallback] = None,
        on_update: Optional[UpdateCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> CallResult:
        if not self._runtime.is_loaded:
            if on_status:
                on_status("Loading on-device model...", None)
            await race_with_token(self._runtime.ensure_loaded(), token)

        if token:
            token.set_phase(ProcessingPhase.GENERATION)

        messages = [
            {"role": "system", "content": prompt},
            {"role": "user", "content": text},
        ]
        content = await with_timeout(
            self._stream(messages, on_update, token),
            self.settings.request_timeout,
            "Request timed out. The on-device model is too slow for this input.",
        )
        return CallResult(content=content)

    async def _release(self) -> None:
        if self._owns_runtime:
            self._runtime.shutdown()
