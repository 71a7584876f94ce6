from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Set
import asyncio
import structlog

from .connection_manager import ConnectionManager
from .schema.events import ClientCommand, CommandType, SessionEvent, StatusEvent
from domain.models.errors import AgentError, ProviderError
from domain.models.session import Session
from domain.orchestration.core.runtime import AssistantRuntime
from domain.streaming.streaming_handler import StreamingHandler

logger = structlog.get_logger(__name__)

router = APIRouter()

# Commands that can run for a while; executed in the background so a
# following cancel command is still received.
BACKGROUND_COMMANDS = {CommandType.USER_MESSAGE, CommandType.RUN_CHAIN}


def _session_event(action: str, session: Session) -> SessionEvent:
    return SessionEvent(
        action=action,
        session_id=session.id,
        title=session.title,
        messages=[m.model_dump(mode="json") for m in session.messages],
    )


async def send_status(runtime: AssistantRuntime, manager: ConnectionManager, client_id: str):
    await manager.send_event(
        client_id,
        StatusEvent(
            session_id=runtime.sessions.current_session_id,
            provider=runtime.gateway.active_type,
            provider_status=runtime.gateway.status_message,
            thinking=runtime.thinking_status.display_text,
            context=runtime.context_stats.to_dict(),
        ),
    )


async def handle_command(
    runtime: AssistantRuntime,
    manager: ConnectionManager,
    client_id: str,
    command: ClientCommand,
):
    """Dispatch one client command to the runtime"""

    if command.type == CommandType.USER_MESSAGE:
        if not command.content or not command.content.strip():
            raise ValueError("user_message requires non-empty content")
        await runtime.send_message(command.content, image_ref=command.image_ref)

    elif command.type == CommandType.CANCEL:
        await runtime.cancel()

    elif command.type == CommandType.NEW_SESSION:
        session = await runtime.sessions.start_new()
        await manager.send_event(client_id, _session_event("started", session))

    elif command.type == CommandType.SWITCH_SESSION:
        if not command.session_id:
            raise ValueError("switch_session requires session_id")
        session = await runtime.sessions.switch_to(command.session_id)
        await manager.send_event(client_id, _session_event("switched", session))

    elif command.type == CommandType.DELETE_SESSION:
        if not command.session_id:
            raise ValueError("delete_session requires session_id")
        current = await runtime.sessions.delete(command.session_id)
        if current is not None:
            await manager.send_event(client_id, _session_event("deleted", current))

    elif command.type == CommandType.SWITCH_PROVIDER:
        if not command.provider:
            raise ValueError("switch_provider requires provider")
        await runtime.switch_provider(command.provider)

    elif command.type == CommandType.RUN_CHAIN:
        if not command.chain_id:
            raise ValueError("run_chain requires chain_id")
        await runtime.run_chain(
            command.chain_id,
            skipped_step_ids=command.skipped_step_ids,
            user_input=command.content,
            synthesize=command.synthesize,
        )

    await send_status(runtime, manager, client_id)


async def run_command(
    runtime: AssistantRuntime,
    manager: ConnectionManager,
    client_id: str,
    command: ClientCommand,
):
    """Run a command, reporting failures to the client"""

    try:
        await handle_command(runtime, manager, client_id, command)
    except (AgentError, ProviderError) as e:
        # Already delivered through on_error
        logger.info("Command ended with typed error", command=command.type.value, kind=e.kind.value)
    except (KeyError, ValueError) as e:
        # Plain KeyError str() wraps the message in quotes
        message = e.args[0] if type(e) is KeyError and e.args else str(e)
        await manager.send_error(client_id, str(message), session_id=runtime.sessions.current_session_id)
    except Exception as e:
        logger.exception("Error processing command", command=command.type.value, client_id=client_id)
        await manager.send_error(client_id, f"Error processing command: {e}")


@router.websocket("/ws/assistant/{client_id}")
async def assistant_websocket(websocket: WebSocket, client_id: str):
    """Main WebSocket endpoint for assistant interaction"""

    runtime: AssistantRuntime = websocket.app.state.runtime
    manager: ConnectionManager = websocket.app.state.connection_manager

    await manager.connect(websocket, client_id)
    handler = StreamingHandler(client_id, manager, lambda: runtime.sessions.current_session_id)
    runtime.set_callbacks(handler, handler)

    tasks: Set[asyncio.Task] = set()
    try:
        await send_status(runtime, manager, client_id)

        while True:
            data = await websocket.receive_json()
            try:
                command = ClientCommand.model_validate(data)
            except ValidationError as e:
                logger.warning("Invalid command received", client_id=client_id, errors=e.error_count())
                await manager.send_error(client_id, f"Invalid command: {e.errors()[0]['msg']}")
                continue

            if command.type in BACKGROUND_COMMANDS:
                task = asyncio.create_task(run_command(runtime, manager, client_id, command))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
            else:
                await run_command(runtime, manager, client_id, command)

    except WebSocketDisconnect:
        logger.info("Client disconnected", client_id=client_id)
    finally:
        await runtime.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        runtime.set_callbacks()
        await manager.disconnect(client_id)
