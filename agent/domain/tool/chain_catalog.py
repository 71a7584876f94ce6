from typing import Dict, List, Optional
from datetime import datetime, timezone
import structlog

from domain.models.errors import ChainConfigurationError
from domain.models.tool_chain import ToolChain, ToolChainStep

logger = structlog.get_logger(__name__)

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def _builtin(chain_id: str, name: str, description: str, icon: str, steps: List[ToolChainStep]) -> ToolChain:
    # Stable step ids so clients can reference steps across restarts
    for index, step in enumerate(steps):
        step.id = f"{chain_id}.{index}"
    return ToolChain(
        id=chain_id,
        name=name,
        description=description,
        icon=icon,
        steps=steps,
        built_in=True,
        created_at=_EPOCH,
    )


def builtin_chains() -> List[ToolChain]:
    """Chains over device tools (calendar, weather, reminders and the like) that the host registers"""
    return [
        _builtin(
            "travel_prep",
            "Travel Prep",
            "Weather, calendar, and packing reminders for your trip",
            "airplane",
            [
                ToolChainStep(tool_name="calendar", argument_template='{"action":"list"}', label="Check upcoming events"),
                ToolChainStep(tool_name="weather", argument_template="{}", label="Get weather forecast"),
                ToolChainStep(
                    tool_name="reminders",
                    argument_template='{"action":"list"}',
                    label="Review packing reminders",
                    optional=True,
                ),
            ],
        ),
        _builtin(
            "daily_digest",
            "Daily Digest",
            "Weather, schedule, and reminders at a glance",
            "newspaper",
            [
                ToolChainStep(tool_name="weather", argument_template="{}", label="Current weather"),
                ToolChainStep(tool_name="calendar", argument_template='{"action":"list"}', label="Today's events"),
                ToolChainStep(tool_name="reminders", argument_template='{"action":"list"}', label="Pending reminders"),
            ],
        ),
        _builtin(
            "meeting_context",
            "Meeting Context",
            "Event details, attendees, and meeting location weather",
            "person.3",
            [
                ToolChainStep(tool_name="calendar", argument_template='{"action":"list"}', label="Get next meeting details"),
                ToolChainStep(tool_name="contacts", argument_template='{"query":"$0"}', label="Look up attendees"),
                ToolChainStep(
                    tool_name="weather",
                    argument_template="{}",
                    label="Weather at meeting location",
                    optional=True,
                ),
            ],
        ),
        _builtin(
            "research_save",
            "Research & Save",
            "Fetch a URL and save key findings to memory",
            "doc.text.magnifyingglass",
            [
                ToolChainStep(tool_name="web_fetch", argument_template='{"url":"$input"}', label="Fetch web content"),
                ToolChainStep(tool_name="remember", argument_template='{"content":"$0"}', label="Save key findings"),
            ],
        ),
    ]


class ToolChainCatalog:
    """Built-in chains plus user-authored ones. Built-ins cannot be replaced or removed."""

    def __init__(self, custom: Optional[List[ToolChain]] = None):
        self._builtin: Dict[str, ToolChain] = {c.id: c for c in builtin_chains()}
        self._custom: Dict[str, ToolChain] = {}
        for chain in custom or []:
            self.save(chain)

    def all(self) -> List[ToolChain]:
        return list(self._builtin.values()) + list(self._custom.values())

    def get(self, chain_id: str) -> Optional[ToolChain]:
        return self._builtin.get(chain_id) or self._custom.get(chain_id)

    def save(self, chain: ToolChain) -> ToolChain:
        if chain.id in self._builtin:
            raise ChainConfigurationError(chain.id, "built-in chains cannot be modified")
        if not chain.steps:
            raise ChainConfigurationError(chain.id, "a chain needs at least one step")

        stored = chain.model_copy(update={"built_in": False})
        self._custom[chain.id] = stored
        logger.info("Saved tool chain", chain_id=chain.id, steps=len(chain.steps))
        return stored

    def delete(self, chain_id: str) -> bool:
        if chain_id in self._builtin:
            raise ChainConfigurationError(chain_id, "built-in chains cannot be deleted")
        return self._custom.pop(chain_id, None) is not None
