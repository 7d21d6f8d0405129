import json
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_json(name: str, default: Any) -> Any:
    raw = os.getenv(name)
    if not raw:
        return default
    return json.loads(raw)


class Settings(BaseModel):
    """Runtime configuration, read from the environment"""

    # Model provider
    anthropic_api_key: Optional[str] = Field(default_factory=lambda: os.getenv("ANTHROPIC_API_KEY"))
    anthropic_api_url: str = Field(
        default_factory=lambda: os.getenv("CLAUDE_API_URL", "https://api.anthropic.com/v1/messages")
    )
    anthropic_version: str = Field(default_factory=lambda: os.getenv("ANTHROPIC_VERSION", "2023-06-01"))
    model: str = Field(
        default_factory=lambda: os.getenv("CLAUDE_MODEL_DYNAMICS_EXPLORER")
        or os.getenv("CLAUDE_MODEL", "claude-sonnet-4-20250514")
    )
    fallback_model: Optional[str] = Field(
        default_factory=lambda: os.getenv("CLAUDE_FALLBACK_MODEL", "claude-3-5-haiku-20241022")
    )
    max_tokens: int = Field(default_factory=lambda: _env_int("CLAUDE_MAX_TOKENS", 2048))
    model_timeout_seconds: int = Field(default_factory=lambda: _env_int("CLAUDE_TIMEOUT_SECONDS", 120))
    rate_limit_default_wait_seconds: int = 30
    rate_limit_max_wait_seconds: int = Field(default_factory=lambda: _env_int("RATE_LIMIT_MAX_WAIT_SECONDS", 60))

    # Loop
    max_tool_rounds: int = Field(default_factory=lambda: _env_int("MAX_TOOL_ROUNDS", 10))
    max_history_messages: int = 6
    keep_recent_messages: int = 4
    result_char_budget: int = Field(default_factory=lambda: _env_int("RESULT_CHAR_BUDGET", 8000))
    large_result_char_budget: int = Field(default_factory=lambda: _env_int("LARGE_RESULT_CHAR_BUDGET", 12000))

    # CRM
    dynamics_url: Optional[str] = Field(default_factory=lambda: os.getenv("DYNAMICS_URL"))
    dynamics_tenant_id: Optional[str] = Field(default_factory=lambda: os.getenv("DYNAMICS_TENANT_ID"))
    dynamics_client_id: Optional[str] = Field(default_factory=lambda: os.getenv("DYNAMICS_CLIENT_ID"))
    dynamics_client_secret: Optional[str] = Field(default_factory=lambda: os.getenv("DYNAMICS_CLIENT_SECRET"))
    dynamics_timeout_seconds: int = Field(default_factory=lambda: _env_int("DYNAMICS_TIMEOUT_SECONDS", 30))

    # Export
    export_max_records: int = Field(default_factory=lambda: _env_int("EXPORT_MAX_RECORDS", 5000))
    export_batch_size: int = Field(default_factory=lambda: _env_int("EXPORT_BATCH_SIZE", 20))
    export_concurrency: int = Field(default_factory=lambda: _env_int("EXPORT_CONCURRENCY", 3))
    export_dir: str = Field(default_factory=lambda: os.getenv("EXPORT_DIR", "./data/exports"))

    # Access control
    restrictions: List[Dict[str, Any]] = Field(default_factory=lambda: _env_json("DYNAMICS_RESTRICTIONS", []))
    user_roles: Dict[str, str] = Field(default_factory=lambda: _env_json("DYNAMICS_USER_ROLES", {}))

    # Observability
    environment: str = Field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))
    langfuse_public_key: Optional[str] = Field(default_factory=lambda: os.getenv("LANGFUSE_PUBLIC_KEY"))
    langfuse_secret_key: Optional[str] = Field(default_factory=lambda: os.getenv("LANGFUSE_SECRET_KEY"))
    langfuse_host: Optional[str] = Field(default_factory=lambda: os.getenv("LANGFUSE_HOST"))

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def tracing_enabled(self) -> bool:
        return bool(self.langfuse_public_key and self.langfuse_secret_key)


@lru_cache()
def get_settings() -> Settings:
    """Get the process-wide settings instance"""
    return Settings()
