from typing import AsyncIterator, Dict, List, Optional, Iterable
from contextlib import aclosing
from enum import Enum
import asyncio
import structlog

from domain.models.errors import NoProvider
from domain.models.message import Message, StreamChunk
from domain.provider.base import LLMProvider
from domain.tool.base import ToolDefinition
from infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)

UNCONFIGURED_MESSAGE = "No provider configured"


class ProviderStatus(str, Enum):
    """Activation status of the gateway"""
    READY = "ready"
    UNCONFIGURED = "unconfigured"


class ProviderGateway:
    """Selects exactly one active provider among the registered ones.

    Fallback follows ``priority`` (registration order unless configured).
    When nothing is available the requested type stays selected with an
    UNCONFIGURED status, and ``NoProvider`` surfaces only when generation is
    attempted.
    """

    def __init__(
        self,
        providers: Iterable[LLMProvider] = (),
        priority: Optional[List[str]] = None,
        prewarm_hint: Optional[str] = "Help me",
    ):
        self._providers: Dict[str, LLMProvider] = {}
        self._priority: List[str] = list(priority or [])
        self.prewarm_hint = prewarm_hint
        self._active_type: Optional[str] = None
        self._status = ProviderStatus.UNCONFIGURED
        self._status_message = UNCONFIGURED_MESSAGE
        self._lock = asyncio.Lock()

        for provider in providers:
            self.register(provider)

    def register(self, provider: LLMProvider):
        self._providers[provider.provider_type] = provider
        if provider.provider_type not in self._priority:
            self._priority.append(provider.provider_type)

    @property
    def provider_types(self) -> List[str]:
        return [t for t in self._priority if t in self._providers]

    @property
    def active_type(self) -> Optional[str]:
        return self._active_type

    @property
    def status(self) -> ProviderStatus:
        return self._status

    @property
    def status_message(self) -> str:
        return self._status_message

    @property
    def is_ready(self) -> bool:
        return self._status == ProviderStatus.READY

    @property
    def active_provider(self) -> Optional[LLMProvider]:
        """The active provider, or None while unconfigured"""
        if not self.is_ready or self._active_type is None:
            return None
        return self._providers.get(self._active_type)

    def require_provider(self) -> LLMProvider:
        provider = self.active_provider
        if provider is None:
            raise NoProvider(self._active_type)
        return provider

    async def check_availability(self, provider_type: str) -> bool:
        """Check one provider. A failing check counts as unavailable."""

        provider = self._providers.get(provider_type)
        if provider is None:
            return False
        try:
            return bool(await provider.is_available())
        except Exception as e:
            logger.warning("Provider availability check failed", provider=provider_type, error=str(e))
            return False

    async def setup_provider(self, preferred: Optional[str] = None) -> str:
        """Activate the preferred provider or the first available fallback.

        Returns the status message: the active provider's display name, or
        the unconfigured message.
        """

        async with self._lock:
            requested = preferred or (self.provider_types[0] if self.provider_types else None)
            candidates = [requested] if requested in self._providers else []
            candidates += [t for t in self.provider_types if t != requested]

            for provider_type in candidates:
                if await self.check_availability(provider_type):
                    provider = self._providers[provider_type]
                    self._active_type = provider_type
                    self._status = ProviderStatus.READY
                    self._status_message = provider.display_name
                    agent_logger.log_provider_switch(
                        requested=requested,
                        active=provider_type,
                        status=self._status.value,
                        fallback=provider_type != requested,
                    )
                    await self._prewarm(provider)
                    return self._status_message

            self._active_type = requested
            self._status = ProviderStatus.UNCONFIGURED
            self._status_message = UNCONFIGURED_MESSAGE
            agent_logger.log_provider_switch(
                requested=requested,
                active=None,
                status=self._status.value,
            )
            logger.warning("No provider available", requested=requested, tried=candidates)
            return self._status_message

    async def _prewarm(self, provider: LLMProvider):
        try:
            await provider.prewarm(self.prewarm_hint)
        except Exception as e:
            logger.warning("Provider prewarm failed", provider=provider.provider_type, error=str(e))

    async def generate(
        self,
        messages: List[Message],
        tools: List[ToolDefinition],
        provider: Optional[LLMProvider] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream from the active provider, or from ``provider`` when pinned.

        A run pins the provider it started with, so a later activation never
        changes the backend under a run in flight.
        """
        backend = provider or self.require_provider()
        async with aclosing(backend.generate(messages, tools)) as stream:
            async for chunk in stream:
                yield chunk

    async def reset_session(self):
        """Clear session state cached by any registered provider"""

        for provider in self._providers.values():
            await provider.reset_session()
