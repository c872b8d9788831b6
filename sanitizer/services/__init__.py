# Services module
from .splitter import SEPARATORS, join_chunks, split_chunks, split_in_half, split_text
from .prompts import DEFAULT_PROMPT, Verbosity, build_prompt
from .providers import (
    DEFAULT_PROVIDER,
    PROVIDERS,
    LlamaCppProvider,
    LlamaRuntime,
    OpenAICompatibleProvider,
    Provider,
    create_provider,
    get_provider_class,
)
from .orchestrator import ChunkOrchestrator, compute_chunk_budget
from .sanitize import STRATEGIES, SanitizeService

__all__ = [
    "SEPARATORS",
    "join_chunks",
    "split_chunks",
    "split_in_half",
    "split_text",
    "DEFAULT_PROMPT",
    "Verbosity",
    "build_prompt",
    "DEFAULT_PROVIDER",
    "PROVIDERS",
    "LlamaCppProvider",
    "LlamaRuntime",
    "OpenAICompatibleProvider",
    "Provider",
    "create_provider",
    "get_provider_class",
    "ChunkOrchestrator",
    "compute_chunk_budget",
    "STRATEGIES",
    "SanitizeService",
]
