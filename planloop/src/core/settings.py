"""Environment-driven configuration for planning runs."""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlanningSettings(BaseSettings):
    """Defaults for the planning loop and the HTTP text generator.

    Every field can be overridden with a ``PLANLOOP_``-prefixed environment
    variable, e.g. ``PLANLOOP_MAX_ATTEMPTS=5``.
    """

    model_config = SettingsConfigDict(
        env_prefix="PLANLOOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_attempts: int = Field(default=3, ge=1)
    threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    model: str = "gpt-4o"
    base_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = Field(default=None, repr=False)
    timeout: float = Field(default=60.0, gt=0)
    tracing_enabled: bool = True

    def public_dict(self) -> Dict[str, Any]:
        """Settings safe to record in a run manifest."""

        return self.model_dump(exclude={"api_key"})


@lru_cache()
def load_settings() -> PlanningSettings:
    """Get cached settings instance."""
    return PlanningSettings()


__all__ = ["PlanningSettings", "load_settings"]
