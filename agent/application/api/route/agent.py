from fastapi import APIRouter, Request
from typing import Any, Dict, List, Optional

from domain.models.message import utcnow
from domain.models.session import Session
from domain.orchestration.core.runtime import AssistantRuntime

router = APIRouter()


def _runtime(request: Request) -> AssistantRuntime:
    return request.app.state.runtime


@router.get("/health")
async def health_check(request: Request) -> Dict[str, Any]:
    """Health check endpoint"""
    runtime = _runtime(request)
    return {
        "status": "healthy",
        "provider": runtime.gateway.active_type,
        "provider_status": runtime.gateway.status_message,
        "active_connections": len(request.app.state.connection_manager.active_connections),
        "timestamp": utcnow().isoformat(),
    }


def _session_row(session: Session, current: Optional[str]) -> Dict[str, Any]:
    return {
        "id": session.id,
        "title": session.title,
        "summary": session.summary,
        "tags": session.all_tags,
        "favorite": session.favorite,
        "message_count": len(session.messages),
        "current": session.id == current,
        "updated_at": session.updated_at.isoformat(),
    }


@router.get("/sessions")
async def list_sessions(request: Request) -> List[Dict[str, Any]]:
    runtime = _runtime(request)
    current = runtime.sessions.current_session_id
    return [_session_row(s, current) for s in await runtime.sessions.list_sessions()]


@router.get("/sessions/favorites")
async def list_favorite_sessions(request: Request) -> List[Dict[str, Any]]:
    runtime = _runtime(request)
    current = runtime.sessions.current_session_id
    return [_session_row(s, current) for s in await runtime.sessions.list_favorites()]


@router.get("/sessions/current/pinned")
async def pinned_messages(request: Request) -> List[Dict[str, Any]]:
    return [
        {"id": m.id, "role": m.role.value, "content": m.content, "created_at": m.created_at.isoformat()}
        for m in _runtime(request).sessions.get_pinned_messages()
    ]


@router.get("/tags")
async def list_tags(request: Request) -> List[str]:
    return await _runtime(request).sessions.list_all_tags()


@router.get("/context/stats")
async def context_stats(request: Request) -> Dict[str, Any]:
    runtime = _runtime(request)
    return {
        **runtime.context_stats.to_dict(),
        "thinking": runtime.thinking_status.display_text,
    }


@router.get("/chains")
async def list_chains(request: Request) -> List[Dict[str, Any]]:
    return _runtime(request).list_chains()
