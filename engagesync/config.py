"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is malformed.
"""
from pydantic_settings import BaseSettings
from pydantic import AliasChoices, Field, field_validator
from functools import lru_cache


RESOLUTION_POLICIES = ("lead_only", "precedence", "lead_with_account_rollup")


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = Field(default=3000, validation_alias=AliasChoices("PORT", "APP_PORT"))
    log_level: str = "INFO"

    # Salesforce (password is sent as password + security token)
    sf_login_url: str = "https://login.salesforce.com"
    sf_username: str = ""
    sf_password: str = ""
    sf_security_token: str = ""
    sf_api_version: str = "59.0"

    # Batching
    batch_size: int = Field(default=100, ge=1)
    batch_timeout_ms: int = Field(default=60000, ge=1)
    shutdown_drain_seconds: float = 10.0

    # Person-level resolution: one of RESOLUTION_POLICIES, chosen per deployment
    resolution_policy: str = "precedence"

    # Webhook verification (?token=<key> or X-Webhook-Token header)
    webhook_verification_key: str = ""

    # Redis (event dedupe + alert cooldowns); empty disables both
    redis_url: str = ""
    event_dedup_enabled: bool = False

    # Sentry
    sentry_dsn: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @field_validator("resolution_policy")
    @classmethod
    def _check_resolution_policy(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in RESOLUTION_POLICIES:
            raise ValueError(
                f"resolution_policy must be one of {', '.join(RESOLUTION_POLICIES)}"
            )
        return value

    @property
    def batch_timeout_seconds(self) -> float:
        return self.batch_timeout_ms / 1000.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
