"""Runtime configuration read from ``PARLEY_*`` environment variables."""

from typing import Any, Literal, Mapping, Optional

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()

ENV_PREFIX = "PARLEY_"


class Settings(BaseSettings):
    """Knobs consumed by the runtime wiring. Durations are in seconds."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, env_ignore_empty=True, extra="ignore")

    data_path: Optional[str] = None
    client_variant: Literal["direct", "thread"] = "direct"
    api_base_url: Optional[str] = None
    model: str = "debunkr.org"
    assistant_id: Optional[str] = None
    history_limit: int = Field(20, ge=1)
    min_request_interval: float = Field(1.0, ge=0.0)
    request_timeout: float = Field(30.0, gt=0.0)
    test_timeout: float = Field(10.0, gt=0.0)
    cache_size: int = Field(20, ge=1)
    save_delay: float = Field(1.0, ge=0.0)
    credential_ttl: float = Field(300.0, ge=0.0)
    poll_max_attempts: int = Field(60, ge=1)

    @field_validator("client_variant", mode="before")
    @classmethod
    def normalize_variant(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the process environment, or from ``environ`` when given.

    Invalid values raise ``pydantic.ValidationError``.
    """
    if environ is None:
        settings = Settings()
    else:
        values = {
            name[len(ENV_PREFIX):].lower(): raw
            for name, raw in environ.items()
            if name.startswith(ENV_PREFIX) and raw.strip()
        }
        settings = Settings(**values)
    logger.info(
        "settings_loaded",
        client_variant=settings.client_variant,
        persistent=settings.data_path is not None,
    )
    return settings
