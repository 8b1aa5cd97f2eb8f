# config.py
# Run-level knobs for the agent loop.
#
# Defaults are safe for interactive use. Every field can be overridden from
# the environment (or a .env file) as AUTOLOOP_<FIELD_NAME>.

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from autoloop.models import ChatOptions

ENV_PREFIX = "AUTOLOOP_"


class AgentConfig(BaseModel):
    """Retry, budget and verification limits for a single run."""

    model: str = Field(default="anthropic/claude-3.5-haiku", description="Model id for every call.")

    # Retry Dispatcher
    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0, description="Seconds between attempts.")

    # Agent Loop
    step_budget: int = Field(default=25, ge=1, description="Hard ceiling shared by all steps of a run.")
    enable_streaming: bool = True
    enable_planning: bool = True
    planner_history_window: int = Field(default=10, ge=0)

    # Verification Loop
    enable_verification: bool = True
    max_verification_loops: int = Field(default=5, ge=1)
    completion_confidence: int = Field(default=95, ge=0, le=100)
    continuation_buffer: int = Field(default=2, ge=0)
    continuation_safety_margin: int = Field(default=2, ge=0)

    # Sampling for agent steps
    temperature: float | None = 0.7
    max_tokens: int | None = None
    top_p: float | None = None

    def chat_options(self) -> ChatOptions:
        return ChatOptions(
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            top_p=self.top_p,
        )

    @classmethod
    def from_env(cls, **overrides) -> "AgentConfig":
        """Build a config from AUTOLOOP_* variables, then apply explicit overrides."""
        load_dotenv()
        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
