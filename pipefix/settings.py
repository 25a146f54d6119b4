from __future__ import annotations

from typing import Any, List

from pydantic import Field, SecretStr
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from pipefix.errors import ConfigurationError
from pipefix.llm.config import ReasoningProvider


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PIPEFIX_", extra="ignore")

    # -------- Reasoning providers --------
    reasoning_provider: ReasoningProvider = ReasoningProvider.openai
    # Tried in order after the primary provider when it is unavailable.
    reasoning_fallback_providers: List[ReasoningProvider] = Field(default_factory=list)
    # Override the provider default model / base url (primary provider only).
    reasoning_model: str | None = None
    reasoning_base_url: str | None = None

    openai_api_key: SecretStr | None = None
    anthropic_api_key: SecretStr | None = None
    gemini_api_key: SecretStr | None = None
    deepseek_api_key: SecretStr | None = None
    openrouter_api_key: SecretStr | None = None
    groq_api_key: SecretStr | None = None
    # LiteLLM proxy usually runs locally without a key.
    litellm_api_key: SecretStr | None = None
    litellm_base_url: str = "http://localhost:4000"

    # Optional OpenRouter ranking headers
    openrouter_site_url: str | None = None
    openrouter_site_name: str | None = None

    # -------- Pipeline --------
    min_coverage_percent: float = Field(default=85.0, ge=0.0, le=100.0)
    max_concurrent_fixes: int = Field(default=2, gt=0)
    poll_interval_s: float = Field(default=30.0, gt=0.0)
    # Safety valve: cap how many new runs are admitted per polling cycle.
    max_runs_per_cycle: int = Field(default=5, gt=0)
    results_history: int = Field(default=100, gt=0)
    parallel_validation: bool = False
    max_parallel_validations: int = Field(default=2, gt=0)

    # -------- Source control --------
    github_mode: str = "mock"  # mock|real|local
    github_token: SecretStr | None = None
    github_repo: str | None = None  # owner/name
    github_base_branch: str = "main"
    github_api_base: str = "https://api.github.com"
    github_timeout_s: float = 15.0
    mock_github_dir: str = ".mock_github"
    public_base_url: str = "http://localhost:8088"
    # github_mode=local: disposable branches become git worktrees of this repo.
    local_repo_path: str | None = None
    local_worktree_root: str = "var/worktrees"

    # -------- Sandbox --------
    sandbox_mode: str = "local"  # local|docker
    sandbox_base_image: str = "ubuntu:22.04"
    sandbox_command_timeout_s: float = 900.0
    # What the sandbox clones. Defaults to https://github.com/<github_repo>.git or local_repo_path.
    sandbox_source_ref: str | None = None
    # YAML file with framework descriptor overrides (see pipefix.sandbox.frameworks).
    frameworks_path: str | None = None

    # -------- Resilience --------
    retry_max_attempts: int = Field(default=3, gt=0)
    retry_base_delay_s: float = Field(default=0.8, ge=0.0)
    retry_max_delay_s: float = Field(default=30.0, ge=0.0)
    breaker_failure_threshold: int = Field(default=5, gt=0)
    breaker_cooldown_s: float = Field(default=60.0, ge=0.0)
    # 0 disables rate limiting.
    rate_limit_capacity: int = Field(default=10, ge=0)
    rate_limit_refill_s: float = Field(default=6.0, ge=0.0)

    # -------- Persistence / telemetry --------
    audit_log_path: str = "var/audit/pipefix_audit.jsonl"
    results_db_path: str = "var/results/autofix.sqlite3"
    log_level: str = "INFO"

    # -------- Service --------
    poller_enabled: bool = False

    def api_key_for(self, provider: ReasoningProvider) -> SecretStr | None:
        return getattr(self, f"{provider.value}_api_key", None)

    def secret_values(self) -> list[str]:
        """Plain secret values, used only to redact them from audit output."""
        out: list[str] = []
        for name in type(self).model_fields:
            v = getattr(self, name)
            if isinstance(v, SecretStr):
                raw = v.get_secret_value()
                if raw:
                    out.append(raw)
        return out

    def require_github_credentials(self) -> tuple[str, str]:
        if not self.github_token or not self.github_repo:
            raise ConfigurationError("PIPEFIX_GITHUB_TOKEN and PIPEFIX_GITHUB_REPO are required for github_mode=real")
        return self.github_token.get_secret_value(), self.github_repo

    def resolved_source_ref(self) -> str:
        if self.sandbox_source_ref:
            return self.sandbox_source_ref
        if self.github_mode == "local" and self.local_repo_path:
            return self.local_repo_path
        if self.github_repo:
            return f"https://github.com/{self.github_repo}.git"
        raise ConfigurationError("PIPEFIX_SANDBOX_SOURCE_REF is required when no repository is configured")


def load_settings(**overrides: Any) -> Settings:
    """Build settings from the environment, reporting invalid values as ConfigurationError."""
    try:
        s = Settings(**overrides)
    except PydanticValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e
    if s.github_mode not in ("mock", "real", "local"):
        raise ConfigurationError(f"unsupported github_mode: {s.github_mode}")
    if s.sandbox_mode not in ("local", "docker"):
        raise ConfigurationError(f"unsupported sandbox_mode: {s.sandbox_mode}")
    return s
