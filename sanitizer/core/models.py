"""Core data models for the sanitizer."""
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError

from sanitizer.core.config import config


# on_status(message, progress) where progress is 0-1 or None for indeterminate
StatusCallback = Callable[[str, Optional[float]], None]
# on_update(delta) with one incremental output fragment
UpdateCallback = Callable[[str], None]


@dataclass(frozen=True)
class Chunk:
    """A bounded text segment and its position in the source text."""
    index: int
    text: str
    separator: str = ""  # glue that followed this chunk in the source

    def __len__(self) -> int:
        return len(self.text)

    def to_dict(self) -> dict:
        return {"index": self.index, "text": self.text, "separator": self.separator}


@dataclass(frozen=True)
class Tool:
    """
    Opaque callable a backend may invoke mid-generation.

    ``parameters`` is a pydantic model describing the arguments; the raw
    JSON arguments produced by the model are validated against it before
    ``execute`` runs.
    """
    name: str
    description: str
    parameters: type[BaseModel]
    execute: Callable[[BaseModel], Awaitable[str]]

    def json_schema(self) -> dict:
        return self.parameters.model_json_schema()

    def to_openai(self) -> dict:
        """Function-tool declaration in chat-completions format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.json_schema(),
            },
        }

    async def invoke(self, raw_arguments: str) -> str:
        """Validate JSON arguments and run the tool."""
        try:
            arguments = self.parameters.model_validate_json(raw_arguments or "{}")
        except ValidationError as e:
            return f"Invalid arguments for {self.name}: {e.errors(include_url=False)}"
        return await self.execute(arguments)


@dataclass(frozen=True)
class ProviderSettings:
    """Backend configuration, immutable for the lifetime of one provider."""
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    model: Optional[str] = None
    context_length: Optional[int] = None  # declared by the user; None = detect
    model_path: Optional[str] = None
    verbosity: str = "medium"
    request_timeout: float = config.request_timeout
    tools: tuple[Tool, ...] = ()

    def to_dict(self) -> dict:
        """Serializable view without the credential."""
        return {
            "base_url": self.base_url,
            "model": self.model,
            "context_length": self.context_length,
            "model_path": self.model_path,
            "verbosity": self.verbosity,
            "request_timeout": self.request_timeout,
            "tools": [t.name for t in self.tools],
        }


@dataclass(frozen=True)
class Availability:
    """Result of a provider capability check."""
    available: bool
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        result = {"available": self.available}
        if self.reason:
            result["reason"] = self.reason
        return result


@dataclass(frozen=True)
class CallResult:
    """Terminal result of a provider call or a whole session."""
    content: str

    def to_dict(self) -> dict:
        return {"content": self.content}


@dataclass(frozen=True)
class StatusEvent:
    """Coarse progress message."""
    message: str
    progress: Optional[float] = None

    def to_dict(self) -> dict:
        return {"status": self.message, "progress": self.progress}


@dataclass(frozen=True)
class DeltaEvent:
    """One incremental output fragment, order-significant."""
    fragment: str

    def to_dict(self) -> dict:
        return {"content": self.fragment}


@dataclass
class SanitizeRequest:
    """Everything needed to run one sanitization session."""
    session_id: str
    text: str
    prompt: str
    provider_id: str
    settings: ProviderSettings = field(default_factory=ProviderSettings)
    strategy: str = "sequential"  # or "condense"
