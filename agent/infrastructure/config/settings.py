from typing import List, Optional
from pydantic import BaseModel, Field
import os

from domain.context.token_budget import TokenBudget
from domain.orchestration.core.main_agent import AgentConfig


def _split(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


class AssistantSettings(BaseModel):
    """Runtime configuration, passed explicitly to every collaborator"""
    service_name: str = Field(default="assistant-agent")
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", pattern="^(json|console)$")
    agent: AgentConfig = Field(default_factory=AgentConfig)
    token_budget: TokenBudget = Field(default_factory=TokenBudget)
    preferred_provider: Optional[str] = Field(None, description="Provider type activated first")
    provider_priority: List[str] = Field(default_factory=list, description="Fallback order; registration order when empty")
    max_messages_per_session: int = Field(default=100, ge=1)
    max_sessions: int = Field(default=50, ge=1)

    @classmethod
    def from_env(cls) -> "AssistantSettings":
        """Build settings from ASSISTANT_* variables plus LOG_LEVEL/LOG_FORMAT"""

        env = os.environ
        agent = {
            key: env[f"ASSISTANT_{key.upper()}"]
            for key in ("max_iterations", "max_retries", "base_retry_delay", "max_retry_delay", "tool_timeout")
            if f"ASSISTANT_{key.upper()}" in env
        }
        budget = {
            key: env[f"ASSISTANT_TOKEN_{key.upper()}"]
            for key in (
                "total",
                "system_reserve",
                "tool_schema_reserve",
                "response_reserve",
                "summarization_threshold",
                "summary_max_tokens",
            )
            if f"ASSISTANT_TOKEN_{key.upper()}" in env
        }

        values = {
            "service_name": env.get("ASSISTANT_SERVICE_NAME"),
            "log_level": env.get("LOG_LEVEL"),
            "log_format": env.get("LOG_FORMAT"),
            "preferred_provider": env.get("ASSISTANT_PROVIDER"),
            "provider_priority": _split(env.get("ASSISTANT_PROVIDER_PRIORITY")),
            "max_messages_per_session": env.get("ASSISTANT_MAX_MESSAGES_PER_SESSION"),
            "max_sessions": env.get("ASSISTANT_MAX_SESSIONS"),
            "agent": AgentConfig.model_validate(agent),
            "token_budget": TokenBudget.model_validate(budget),
        }
        return cls.model_validate({k: v for k, v in values.items() if v is not None})
