"""
FastAPI dependencies for the chat runtime and the active session.
"""

from fastapi import HTTPException, Request, WebSocket, status

from dmchat.core.errors import Unauthenticated
from dmchat.services.chat_session import ChatSessionManager
from dmchat.services.runtime import ChatRuntime


def get_runtime(request: Request) -> ChatRuntime:
    """Runtime created by the app factory."""
    return request.app.state.chat_runtime


def get_ws_runtime(websocket: WebSocket) -> ChatRuntime:
    return websocket.app.state.chat_runtime


def require_session(runtime: ChatRuntime) -> ChatSessionManager:
    try:
        return runtime.session
    except Unauthenticated as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e)) from e


def get_chat_session(request: Request) -> ChatSessionManager:
    """
    Dependency that checks that a user is logged in.
    Returns the user's chat session.
    """
    return require_session(get_runtime(request))
