"""OpenAI-compatible chat-completions provider (Ollama, LM Studio, OpenAI...)."""
import json
import logging
from contextlib import contextmanager
from typing import Any, Optional

import openai
from openai import AsyncOpenAI

from sanitizer.core.cancellation import (
    CancellationToken,
    iterate_with_token,
    race_with_token,
)
from sanitizer.core.config import config
from sanitizer.core.errors import (
    ContextOverflowError,
    NetworkError,
    SanitizerError,
    SanitizerTimeoutError,
    is_context_error,
)
from sanitizer.core.models import (
    Availability,
    CallResult,
    ProviderSettings,
    StatusCallback,
    Tool,
    UpdateCallback,
)
from sanitizer.services.providers.base import Provider

logger = logging.getLogger(__name__)

# Different servers expose the context size under different keys
CONTEXT_LENGTH_KEYS = ("context_window", "context_length", "max_context_length")


@contextmanager
def _translate_errors():
    """Convert OpenAI SDK exceptions to sanitizer error kinds."""
    try:
        yield
    except openai.APITimeoutError as e:
        raise SanitizerTimeoutError(str(e) or "Request timed out") from e
    except openai.APIConnectionError as e:
        raise NetworkError(str(e) or "Connection error") from e
    except openai.APIStatusError as e:
        if is_context_error(e):
            raise ContextOverflowError(str(e)) from e
        raise


class OpenAICompatibleProvider(Provider):
    """
    Remote backend speaking the chat-completions streaming protocol.

    Design:
    - One AsyncOpenAI client per provider instance, closed on destroy()
    - Context length from settings, else ``models.retrieve``, else 4096
    - Tool calls are executed between streamed turns, bounded by
      ``config.max_tool_rounds``
    """

    id = "openai-compatible"
    label = "OpenAI-compatible API"
    DEFAULT_CONTEXT_LENGTH = config.remote_context_length

    def __init__(self, settings: ProviderSettings | None = None, client: Any = None):
        super().__init__(settings)
        self._client = client or AsyncOpenAI(
            base_url=self.settings.base_url or config.default_base_url,
            api_key=self.settings.api_key or config.default_api_key,
            timeout=self.settings.request_timeout,
        )
        self._model = self.settings.model or config.default_model
        self._tools: dict[str, Tool] = {t.name: t for t in self.settings.tools}

    @classmethod
    async def check_availability(cls, settings: ProviderSettings | None = None) -> Availability:
        # Connectivity is validated at call time
        return Availability(available=True)

    async def detect_context_length(self) -> Optional[int]:
        """Read the context size from the model info endpoint, if exposed."""
        if not self.settings.model:
            return None
        try:
            info = await self._client.models.retrieve(self.settings.model)
        except openai.OpenAIError as e:
            logger.debug("Model info unavailable for %s: %s", self.settings.model, e)
            return None

        extra = getattr(info, "model_extra", None) or {}
        for key in CONTEXT_LENGTH_KEYS:
            value = extra.get(key) or getattr(info, key, None)
            if isinstance(value, int) and value > 0:
                return value
        return None

    def _build_params(self, messages: list[dict]) -> dict:
        params: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "stream": True,
        }
        if self._tools:
            params["tools"] = [t.to_openai() for t in self._tools.values()]
        return params

    async def _stream_turn(
        self,
        messages: list[dict],
        on_update: Optional[UpdateCallback],
        token: Optional[CancellationToken],
    ) -> tuple[str, list[dict]]:
        """
        Stream one assistant turn.

        Returns:
            Tuple of (generated_text, tool_calls)
        """
        text = ""
        calls: dict[int, dict] = {}

        with _translate_errors():
            stream = await race_with_token(
                self._client.chat.completions.create(**self._build_params(messages)),
                token,
            )
            try:
                async for event in iterate_with_token(stream, token):
                    if not event.choices:
                        continue
                    delta = event.choices[0].delta
                    if delta.content:
                        text += delta.content
                        if on_update:
                            on_update(delta.content)
                    for tc in delta.tool_calls or []:
                        entry = calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                        if tc.id:
                            entry["id"] = tc.id
                        if tc.function:
                            entry["name"] += tc.function.name or ""
                            entry["arguments"] += tc.function.arguments or ""
            finally:
                await stream.close()

        return text, [calls[i] for i in sorted(calls)]

    async def _run_tool(self, call: dict) -> str:
        tool = self._tools.get(call["name"])
        if tool is None:
            return f"Unknown tool: {call['name']}"
        logger.info("Running tool %s", call["name"])
        return await tool.invoke(call["arguments"])

    async def call(
        self,
        text: str,
        prompt: str,
        on_status: Optional[StatusCallback] = None,
        on_update: Optional[UpdateCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> CallResult:
        messages: list[dict] = [
            {"role": "system", "content": prompt},
            {"role": "user", "content": text},
        ]
        content = ""

        for _ in range(config.max_tool_rounds + 1):
            turn_text, tool_calls = await self._stream_turn(messages, on_update, token)
            content += turn_text
            if not tool_calls:
                return CallResult(content=content)

            messages.append({
                "role": "assistant",
                "content": turn_text or None,
                "tool_calls": [
                    {
                        "id": c["id"],
                        "type": "function",
                        "function": {"name": c["name"], "arguments": c["arguments"]},
                    }
                    for c in tool_calls
                ],
            })
            for c in tool_calls:
                if on_status:
                    on_status(f"Running {c['name']}...", None)
                result = await race_with_token(self._run_tool(c), token)
                messages.append({
                    "role": "tool",
                    "tool_call_id": c["id"],
                    "content": result,
                })

        raise SanitizerError(
            f"Model kept requesting tools after {config.max_tool_rounds} rounds: "
            + json.dumps([c["name"] for c in tool_calls])
        )

    async def _release(self) -> None:
        """Clean up the HTTP client."""
        await self._client.close()
        logger.debug("OpenAI-compatible provider cleaned up")
