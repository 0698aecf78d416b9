"""Configuration models."""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_AGENT_API_URL = "https://agent-prod.studio.lyzr.ai/v3/inference/chat/"
DEFAULT_AGENT_ID = "690ddd00fef1b728eed3206a"


class ParseOptions(BaseModel):
    """Options for tolerant LLM JSON parsing.

    Accepts snake_case field names or their camelCase aliases
    (``attemptFix``, ``maxBlocks``, ``preferFirst``, ``allowPartial``).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    attempt_fix: bool = False
    max_blocks: int = 1
    prefer_first: bool = True
    allow_partial: bool = False

    @field_validator("max_blocks", mode="before")
    @classmethod
    def clamp_max_blocks(cls, value: Any) -> int:
        """Clamp to at least one block instead of rejecting bad values."""
        try:
            value = int(value)
        except (TypeError, ValueError, OverflowError):
            return 1
        return max(value, 1)


class AgentConfig(BaseModel):
    """Inference-service relay configuration."""
    api_key: Optional[str] = None
    api_url: str = DEFAULT_AGENT_API_URL
    agent_id: str = DEFAULT_AGENT_ID
    request_timeout: float = 30.0
    parse_max_blocks: int = 5


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Inference service
    lyzr_api_key: Optional[str] = None
    agent_api_url: str = DEFAULT_AGENT_API_URL
    agent_id: str = DEFAULT_AGENT_ID
    request_timeout: float = 30.0

    # Reply parsing
    parse_max_blocks: int = 5

    # Application Configuration
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def agent_config(self) -> AgentConfig:
        """Get inference-service configuration."""
        return AgentConfig(
            api_key=self.lyzr_api_key,
            api_url=self.agent_api_url,
            agent_id=self.agent_id,
            request_timeout=self.request_timeout,
            parse_max_blocks=self.parse_max_blocks
        )
