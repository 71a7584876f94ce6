from typing import Iterable, List, Optional
import asyncio
import structlog

from domain.context.context_manager import ContextBudgetManager
from domain.context.summarizer import Summarizer
from domain.context.topic_tagger import TopicTagger
from domain.models.agent_state import ContextStats, ThinkingStatus
from domain.models.errors import AgentError, ProviderError
from domain.models.tool_chain import ToolChain, ToolChainResult
from domain.orchestration.core.callbacks import AgentCallbacks
from domain.orchestration.core.main_agent import Agent
from domain.orchestration.session.continuity import SessionContinuity
from domain.provider.base import LLMProvider
from domain.provider.gateway import ProviderGateway
from domain.tool.base import Tool
from domain.tool.builtin.calculator import CalculatorTool
from domain.tool.chain_catalog import ToolChainCatalog
from domain.tool.chain_executor import ToolChainCallbacks, ToolChainExecutor
from domain.tool.tool_executor import ToolExecutor
from domain.tool.tool_registry import ToolRegistry
from infrastructure.config.settings import AssistantSettings
from infrastructure.persistence.session_store import InMemorySessionStore, SessionStore

logger = structlog.get_logger(__name__)

SYNTHESIS_PROMPT = "Summarize these results from the \"{name}\" workflow for me:\n\n{context}"


class AssistantRuntime:
    """Wires the agent, provider gateway, sessions and tool chains together"""

    def __init__(
        self,
        settings: Optional[AssistantSettings] = None,
        providers: Iterable[LLMProvider] = (),
        tools: Optional[Iterable[Tool]] = None,
        store: Optional[SessionStore] = None,
        summarizer: Optional[Summarizer] = None,
        session_summarizer: Optional[Summarizer] = None,
        catalog: Optional[ToolChainCatalog] = None,
        topic_tagger: Optional[TopicTagger] = None,
    ):
        self.settings = settings or AssistantSettings()

        self.tool_registry = ToolRegistry(ToolExecutor(timeout=self.settings.agent.tool_timeout))
        for tool in (tools if tools is not None else [CalculatorTool()]):
            self.tool_registry.register(tool)

        self.gateway = ProviderGateway(providers, priority=self.settings.provider_priority or None)
        self.context = ContextBudgetManager(self.settings.token_budget, summarizer=summarizer)
        self.agent = Agent(self.gateway, self.tool_registry, self.context, self.settings.agent)
        self.store = store or InMemorySessionStore(
            max_sessions=self.settings.max_sessions,
            max_messages_per_session=self.settings.max_messages_per_session,
        )
        self.sessions = SessionContinuity(self.agent, self.store, session_summarizer, topic_tagger)
        self.chain_executor = ToolChainExecutor(self.tool_registry)
        self.catalog = catalog or ToolChainCatalog()

        self._chain_cancel: Optional[asyncio.Event] = None

    def set_callbacks(
        self,
        agent_callbacks: Optional[AgentCallbacks] = None,
        chain_callbacks: Optional[ToolChainCallbacks] = None,
    ):
        self.agent.callbacks = agent_callbacks or AgentCallbacks()
        self.chain_executor.callbacks = chain_callbacks or ToolChainCallbacks()

    async def startup(self) -> str:
        """Pick a provider and restore the last session"""

        status = await self.gateway.setup_provider(self.settings.preferred_provider)
        await self.sessions.restore()
        logger.info(
            "Assistant runtime started",
            provider=self.gateway.active_type,
            provider_status=status,
            session_id=self.sessions.current_session_id,
        )
        return status

    async def send_message(self, text: str, image_ref: Optional[str] = None) -> Optional[str]:
        """Run the agent for one user message and persist the outcome.

        Returns None when the run was cancelled; a cancelled run leaves
        nothing to persist.
        """

        await self.sessions.ensure_session()
        try:
            result = await self.agent.run(text, image_ref=image_ref)
        except (AgentError, ProviderError):
            await self.sessions.save_current()
            raise

        if result is not None:
            await self.sessions.save_current()
        return result

    async def cancel(self):
        if self._chain_cancel is not None:
            self._chain_cancel.set()
        await self.agent.cancel_run()

    async def switch_provider(self, provider_type: str) -> str:
        """Reset provider-scoped state, then activate the requested provider.

        The current session transcript is reloaded afterwards, so the
        conversation continues on the new provider without any state cached
        by the old one.
        """

        await self.sessions.save_current()
        await self.agent.cancel_run()
        await self.agent.reset_for_new_conversation()
        status = await self.gateway.setup_provider(provider_type)

        if self.sessions.current_session_id is not None:
            session = await self.store.load(self.sessions.current_session_id)
            self.agent.load_messages(session.messages, session.context_summary, session.summarized_through)
        return status

    async def run_chain(
        self,
        chain_id: str,
        skipped_step_ids: Iterable[str] = (),
        user_input: Optional[str] = None,
        synthesize: bool = True,
    ) -> ToolChainResult:
        """Execute a catalogued chain, optionally letting the agent summarize it"""

        chain = self.catalog.get(chain_id)
        if chain is None:
            raise KeyError(f"Unknown tool chain: {chain_id}")

        cancel_event = asyncio.Event()
        self._chain_cancel = cancel_event
        try:
            result = await self.chain_executor.execute(
                chain,
                skipped_step_ids=skipped_step_ids,
                user_input=user_input,
                cancel_event=cancel_event,
            )
        finally:
            if self._chain_cancel is cancel_event:
                self._chain_cancel = None

        context = result.synthesis_context
        if synthesize and not result.cancelled and context:
            await self.chain_executor.callbacks.on_chain_synthesizing()
            await self.send_message(SYNTHESIS_PROMPT.format(name=chain.name, context=context))
        return result

    def chain_available(self, chain: ToolChain) -> bool:
        """Whether every required step has an enabled tool"""
        return all(self.tool_registry.is_enabled(s.tool_name) for s in chain.steps if not s.optional)

    def list_chains(self) -> List[dict]:
        return [
            {
                "id": c.id,
                "name": c.name,
                "description": c.description,
                "icon": c.icon,
                "built_in": c.built_in,
                "available": self.chain_available(c),
                "steps": [{"id": s.id, "tool_name": s.tool_name, "label": s.label, "optional": s.optional} for s in c.steps],
            }
            for c in self.catalog.all()
        ]

    @property
    def context_stats(self) -> ContextStats:
        return self.agent.context_stats

    @property
    def thinking_status(self) -> ThinkingStatus:
        return self.agent.thinking_status
