from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Runtime
    environment: str = Field(default="development", validation_alias="SALESCRM_ENV")
    log_level: str = Field(default="INFO", validation_alias="SALESCRM_LOG_LEVEL")

    # Clinic API
    api_base_url: str = Field(
        default="http://localhost:3000/api", validation_alias="SALESCRM_API_BASE_URL"
    )
    api_token: str | None = Field(default=None, validation_alias="SALESCRM_API_TOKEN")
    api_timeout_s: float = Field(default=10.0, validation_alias="SALESCRM_API_TIMEOUT_S")

    # Reads are retried on transient failures; writes never are.
    read_retry_attempts: int = Field(default=3, validation_alias="SALESCRM_READ_RETRY_ATTEMPTS")
    retry_base_delay_s: float = Field(default=0.1, validation_alias="SALESCRM_RETRY_BASE_DELAY_S")
    retry_max_delay_s: float = Field(default=2.0, validation_alias="SALESCRM_RETRY_MAX_DELAY_S")

    # Board
    description_max_length: int = Field(
        default=300, validation_alias="SALESCRM_DESCRIPTION_MAX_LENGTH"
    )
    # Shown on provisional notes until the server echoes the real author.
    note_author: str = Field(default="Usuário", validation_alias="SALESCRM_NOTE_AUTHOR")
    label_context: str = Field(default="sales", validation_alias="SALESCRM_LABEL_CONTEXT")

    # ---- helpers / derived flags ----
    @property
    def normalized_environment(self) -> str:
        v = (self.environment or "").strip().lower()
        if v in ("prod", "production"):
            return "production"
        if v in ("stage", "staging"):
            return "staging"
        if v in ("dev", "development"):
            return "development"
        return v or "development"

    @property
    def is_production(self) -> bool:
        return self.normalized_environment == "production"

    def require_in_production(self) -> None:
        """
        Enforce required settings in production.

        Local runs may talk to an unauthenticated dev API, production must not.
        """
        if not self.is_production:
            return

        missing: list[str] = []
        if not (self.api_base_url and self.api_base_url.strip()):
            missing.append("SALESCRM_API_BASE_URL")
        if not (self.api_token and self.api_token.strip()):
            missing.append("SALESCRM_API_TOKEN")

        if missing:
            raise RuntimeError(
                "Missing required production environment variables: "
                + ", ".join(missing)
            )

    def to_log_safe_dict(self) -> dict[str, object]:
        """
        A redacted representation safe for structured logs / diagnostics.
        """
        return {
            "environment": self.normalized_environment,
            "api": {
                "api_base_url": self.api_base_url,
                "api_token_configured": bool(self.api_token and self.api_token.strip()),
                "api_timeout_s": self.api_timeout_s,
                "read_retry_attempts": self.read_retry_attempts,
            },
            "board": {
                "description_max_length": self.description_max_length,
                "label_context": self.label_context,
            },
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    s = Settings()
    s.require_in_production()
    return s
