"""Application configuration and constants."""
from pathlib import Path
from dataclasses import dataclass, field


# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent.parent


@dataclass
class ModelPaths:
    """Paths to on-device model files."""
    llm: str = "models/sanitizer-llm-Q4_K_M.gguf"

    def get_llm_path(self) -> str:
        return str(PROJECT_ROOT / self.llm)


@dataclass
class Config:
    """Application configuration."""
    # Remote backend defaults
    default_base_url: str = "http://localhost:11434/v1"
    default_api_key: str = "sk-no-key-required"
    default_model: str = "local-model"
    remote_context_length: int = 4096

    # On-device backend
    models: ModelPaths = field(default_factory=ModelPaths)
    local_context_length: int = 4000
    llm_batch_size: int = 2048
    llm_ubatch_size: int = 512

    # Chunk budget (tokens unless noted)
    chars_per_token: int = 3
    min_context_tokens: int = 512
    min_content_tokens: int = 256
    response_buffer_tokens: int = 1024

    # Timeouts (seconds). LM Studio can take 1-2 min on the first token.
    request_timeout: float = 300.0
    chunk_timeout: float = 120.0
    keepalive_timeout: float = 3.0

    # Recovery and tool bounds
    max_retry_depth: int = 2
    max_tool_rounds: int = 5
    max_condense_rounds: int = 4

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"


# Global config instance
config = Config()
