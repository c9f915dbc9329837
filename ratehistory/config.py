"""
Runtime settings for the rate history tooling.

Defaults live on the model; deployments override them with RATEHISTORY_*
environment variables, and the CLI overrides both with explicit flags.
Values are validated on load, so a bad variable fails with its field name.
"""

from pathlib import Path
from typing import Mapping, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


ENV_PREFIX = "RATEHISTORY_"


class Settings(BaseSettings):
    """Application settings loaded from RATEHISTORY_* environment variables."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, env_ignore_empty=True)

    # Storage
    data_dir: Path = Field(default=Path("data/rates"))
    history_dir: Optional[Path] = Field(default=None)   # defaults to <data_dir>/history
    health_path: Path = Field(default=Path("out/health.json"))

    # Archive client
    user_agent: str = Field(default="RateHistoryBot/1.0 (+https://example.com)")
    rate_per_sec: float = Field(default=1.0, gt=0)      # archive requests per second
    burst: int = Field(default=2, ge=1)                 # token bucket capacity
    retry_attempts: int = Field(default=3, ge=1)
    retry_step_seconds: float = Field(default=2.0, ge=0)  # linear backoff step

    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _default_history_dir(self) -> "Settings":
        if self.history_dir is None:
            self.history_dir = self.data_dir / "history"
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Settings from the process environment, or from `environ` when given.
        Raises pydantic.ValidationError naming the offending field.
        """
        if environ is None:
            return cls()

        values = {}
        for key, value in environ.items():
            if not key.startswith(ENV_PREFIX) or not value:
                continue
            name = key[len(ENV_PREFIX):].lower()
            if name in cls.model_fields:
                values[name] = value
        return cls(**values)

    def override(self, **changes) -> "Settings":
        """Return a validated copy with the non-None values in `changes` applied."""
        changes = {k: v for k, v in changes.items() if v is not None}
        if "data_dir" in changes and "history_dir" not in changes:
            changes["history_dir"] = None
        return type(self)(**{**self.model_dump(), **changes})
