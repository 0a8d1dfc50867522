"""Engine configuration

Defaults can be overridden through ROLLTABLE_* environment variables, and
each collection's metadata may tighten or relax the limits for evaluations
that run inside that collection.
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


OverflowBehavior = Literal["stop", "cycle", "error"]


class EngineConfig(BaseSettings):
    """Limits and policies applied during evaluation"""

    model_config = SettingsConfigDict(
        env_prefix="ROLLTABLE_",
        extra="ignore",
    )

    max_recursion_depth: int = Field(default=50, ge=1)
    max_exploding_dice: int = Field(default=100, ge=0)
    max_inheritance_depth: int = Field(default=5, ge=1)
    unique_overflow_behavior: OverflowBehavior = "stop"
    log_level: str = "WARNING"

    def merged_with(self, metadata) -> "EngineConfig":
        """Return a copy with any limits declared in document metadata applied"""
        if metadata is None:
            return self.model_copy()

        overrides = {}
        for name in (
            "max_recursion_depth",
            "max_exploding_dice",
            "max_inheritance_depth",
            "unique_overflow_behavior",
        ):
            value: Optional[object] = getattr(metadata, name, None)
            if value is not None:
                overrides[name] = value
        return self.model_copy(update=overrides)
