"""Settings via pydantic-settings with PARLEY_ env prefix.

Secrets use validation_alias to read from the unprefixed env vars
(LLM_API_KEY, TELEGRAM_BOT_TOKEN) so the same .env file works for
other tooling that expects the conventional names.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PARLEY_", env_file=".env")

    log_level: str = "info"

    # LLM (OpenAI-compatible chat completions)
    llm_api_key: str = Field("", validation_alias="LLM_API_KEY")
    llm_base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o"
    fallback_models: list[str] = Field(default_factory=list)
    max_tokens: int = 4096
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    provider_timeout: float = 180.0  # overall deadline per provider call
    model_cooldown: float = 60.0  # seconds a model is skipped after a retryable failure

    # Agent loop
    max_iterations: int = 10
    agent_name: str = "Parley"
    system_prompt: str = "You are a helpful personal assistant running on the user's computer."
    tool_notifications: bool = True
    workspace_dir: str = "/tmp/parley-workspace"
    bash_timeout: int = 30

    # Intake: rate limiting
    rate_limit_max_requests: int = 10
    rate_limit_window: float = 60.0

    # Intake: debounce + fragment reassembly
    debounce_window: float = 1.5
    fragment_start_threshold: int = 4000
    fragment_max_parts: int = 12
    fragment_max_chars: int = 50000
    fragment_time_gap: float = 1.5
    fragment_id_gap: int = 1

    # Approval gate
    approval_timeout: float = 60.0
    approval_retention: float = 120.0  # pending approvals older than this are swept

    # Transport
    telegram_bot_token: str = Field("", validation_alias="TELEGRAM_BOT_TOKEN")
    allowed_users: list[int] = Field(default_factory=list)

    # Admin API
    host: str = "0.0.0.0"
    port: int = 8000
    admin_token: str = Field("", validation_alias="PARLEY_ADMIN_TOKEN")

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.rate_limit_max_requests < 1:
            raise ValueError("rate_limit_max_requests must be >= 1")
        if self.rate_limit_window <= 0:
            raise ValueError("rate_limit_window must be > 0")
        if not 0 <= self.debounce_window <= 10:
            raise ValueError(
                f"debounce_window ({self.debounce_window}) must be between 0 and 10 seconds"
            )
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        return self

    @property
    def model_chain(self) -> list[str]:
        """Primary model followed by fallbacks, duplicates removed."""
        chain: list[str] = []
        for name in [self.model, *self.fallback_models]:
            if name and name not in chain:
                chain.append(name)
        return chain
