"""Provider configuration.

Adapters are chosen by name from a :class:`ProviderConfig`, never by
inspecting objects at runtime.  Credentials fall back to the vendor's
usual environment variable when not given explicitly.
"""

from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field

ProviderName = Literal[
    "openai", "openrouter", "vllm", "openai_compatible", "anthropic", "gemini",
]

API_KEY_ENV_VARS: dict[str, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY",),
    "openrouter": ("OPENROUTER_API_KEY",),
    "anthropic": ("ANTHROPIC_API_KEY",),
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
}


class ProviderConfig(BaseModel):
    provider: ProviderName
    api_key: str | None = None
    base_url: str | None = None
    timeout: float = Field(default=600.0, gt=0)
    max_retries: int = Field(default=5, ge=0)

    def resolved_api_key(self) -> str | None:
        if self.api_key:
            return self.api_key
        for name in API_KEY_ENV_VARS.get(self.provider, ()):
            value = os.getenv(name)
            if value:
                return value
        return None

    @classmethod
    def from_env(cls, prefix: str = "PALAVER_") -> "ProviderConfig":
        """Build a config from ``PALAVER_PROVIDER``, ``PALAVER_BASE_URL``,
        ``PALAVER_TIMEOUT`` and ``PALAVER_MAX_RETRIES``."""
        values: dict = {"provider": os.getenv(f"{prefix}PROVIDER", "openai")}
        if base_url := os.getenv(f"{prefix}BASE_URL"):
            values["base_url"] = base_url
        if timeout := os.getenv(f"{prefix}TIMEOUT"):
            values["timeout"] = float(timeout)
        if max_retries := os.getenv(f"{prefix}MAX_RETRIES"):
            values["max_retries"] = int(max_retries)
        return cls(**values)
