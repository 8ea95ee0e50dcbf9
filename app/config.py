from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./agentflow.db"

    # LLM (OpenRouter, OpenAI-compatible)
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    LLM_MODEL: str = "deepseek/deepseek-r1-0528:free"

    # Gmail transport (leave empty to log outbound mail without sending)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GMAIL_REFRESH_TOKEN: str = ""
    GMAIL_SENDER: str = ""

    # Background poller
    POLLER_ENABLED: bool = True
    POLLER_STARTUP_DELAY_SECONDS: int = 10

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = True

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()

# Target roles whose work must never be repeated automatically (deal creation,
# invoice issuing).
NON_IDEMPOTENT_ROLES = {"sales", "accounting"}


class PipelineSettings(BaseModel):
    """Tunable thresholds for the deal pipeline.

    Assignments are validated, so an out-of-range value raises
    ``pydantic.ValidationError`` instead of silently corrupting a sweep.
    Persisted overrides live in the ``app_settings`` table (see
    ``app.services.settings_store``).
    """

    # How often the reply poller checks replyable deals
    reply_poll_interval_minutes: int = Field(30, ge=1, le=1440)
    # Offer-stage deals untouched this long get a follow-up
    stale_lead_days: int = Field(7, ge=1, le=90)
    max_followup_attempts: int = Field(3, ge=1, le=10)
    # Lost deals untouched this long are reopened with a fresh lead
    lost_deal_reopen_days: int = Field(60, ge=1, le=365)
    # Won deals get one satisfaction email in [days, days + 1)
    satisfaction_email_days: int = Field(3, ge=1, le=60)
    # Must exceed min_replies_before_offer (checked below)
    max_offer_rounds: int = Field(6, ge=1, le=20)
    min_replies_before_offer: int = Field(3, ge=0, le=20)
    # Stale task recovery
    stale_pending_task_minutes: int = Field(5, ge=1, le=1440)
    stale_processing_task_minutes: int = Field(10, ge=1, le=1440)
    auto_retry_roles: list[str] = Field(default_factory=lambda: ["email"])
    # Scheduled market research
    research_interval_hours: int = Field(22, ge=1, le=168)
    research_running_timeout_hours: int = Field(2, ge=1, le=24)
    default_tax_rate: float = Field(0.24, ge=0.0, le=1.0)

    model_config = {"validate_assignment": True, "extra": "ignore"}

    @field_validator("auto_retry_roles")
    @classmethod
    def _only_idempotent_roles(cls, roles: list[str]) -> list[str]:
        unsafe = sorted(set(roles) & NON_IDEMPOTENT_ROLES)
        if unsafe:
            raise ValueError(f"roles with non-idempotent side effects cannot be auto-retried: {unsafe}")
        return roles

    @model_validator(mode="after")
    def _pricing_reachable(self) -> "PipelineSettings":
        # The round that unlocks pricing would otherwise be forced to a decline
        if self.max_offer_rounds <= self.min_replies_before_offer:
            raise ValueError(
                f"max_offer_rounds ({self.max_offer_rounds}) must be greater than "
                f"min_replies_before_offer ({self.min_replies_before_offer})"
            )
        return self
