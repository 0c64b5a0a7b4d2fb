"""
Engine configuration.

Tunables are read from the environment (a ``.env`` file is loaded by the
application entry point) and validated by pydantic.
"""

import os

from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    """Lifecycle and escalation settings."""
    registration_pages: int = Field(default=6, ge=1)
    seconds_per_hour: float = Field(default=3600.0, ge=0)
    audit_dir: str = "./audit"
    seed_templates: bool = True

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            registration_pages=int(os.getenv("REGISTRATION_PAGES", "6")),
            seconds_per_hour=float(os.getenv("ESCALATION_SECONDS_PER_HOUR", "3600")),
            audit_dir=os.getenv("AUDIT_DIR", "./audit"),
            seed_templates=os.getenv("SEED_TEMPLATES", "true").lower() == "true",
        )
