"""
API Routes definition.
Handles Authentication, chat windows, messages, the rooms list and
real-time WebSockets.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel

from dmchat.api.dependencies import get_chat_session, get_runtime, get_ws_runtime
from dmchat.core.auth_models import LoginRequest, UserProfile
from dmchat.core.errors import (
    BackendUnavailable,
    ChatError,
    EmptyMessage,
    InvalidIdentifier,
    PartialMailboxWrite,
    Unauthenticated,
)
from dmchat.core.message import Message
from dmchat.core.room_list import RoomSummary, summarize_rooms, total_unread
from dmchat.services.auth import current_auth_provider
from dmchat.services.chat_session import ChatSessionManager
from dmchat.services.message_log import DEFAULT_RECENT_LIMIT
from dmchat.services.runtime import ChatRuntime

logger = logging.getLogger(__name__)

router = APIRouter()


class SendMessageRequest(BaseModel):
    """Payload for sending a message."""

    target: UserProfile
    text: str


class SendMessageResponse(BaseModel):
    message_id: str
    room_id: str
    warning: Optional[str] = None


class RoomListResponse(BaseModel):
    total_unread: int
    rooms: List[RoomSummary]


def raise_http(error: ChatError) -> NoReturn:
    """Maps a chat error to the matching HTTP error."""
    if isinstance(error, (InvalidIdentifier, EmptyMessage)):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(error, Unauthenticated):
        code = status.HTTP_401_UNAUTHORIZED
    elif isinstance(error, BackendUnavailable):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    raise HTTPException(status_code=code, detail=str(error)) from error


# === PUBLIC ROUTES ===


@router.post("/login", response_model=UserProfile)
async def login(credentials: LoginRequest, runtime: ChatRuntime = Depends(get_runtime)) -> UserProfile:
    """
    Login endpoint.
    1. Authenticates user via AuthProvider
    2. Starts the user's chat session
    """
    user = await current_auth_provider.authenticate(credentials)

    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials.")

    try:
        await runtime.login(user)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    return user


@router.post("/logout")
async def logout(runtime: ChatRuntime = Depends(get_runtime)) -> Dict[str, str]:
    """Ends the chat session and cancels its subscriptions."""
    await runtime.logout()
    return {"status": "logged_out"}


@router.get("/health")
async def health_check(runtime: ChatRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    """Returns the service status"""
    user = runtime.current_user
    return {"status": "online", "authenticated": user is not None, "user_id": user.uid if user else None}


# === Protected routes ===


@router.get("/me", response_model=UserProfile)
async def get_me(session: ChatSessionManager = Depends(get_chat_session)) -> UserProfile:
    """Returns the current user profile"""
    return session.user


@router.get("/chats", response_model=List[UserProfile])
async def get_open_chats(session: ChatSessionManager = Depends(get_chat_session)) -> List[UserProfile]:
    """Chat windows currently open."""
    return session.open_windows


@router.post("/chats", response_model=List[UserProfile])
async def open_chat(
    target: UserProfile, session: ChatSessionManager = Depends(get_chat_session)
) -> List[UserProfile]:
    """Opens a chat window with target and marks the room as read."""
    try:
        await session.open_chat(target)
    except ChatError as e:
        raise_http(e)
    return session.open_windows


@router.delete("/chats/{target_uid}", response_model=List[UserProfile])
async def close_chat(
    target_uid: str, session: ChatSessionManager = Depends(get_chat_session)
) -> List[UserProfile]:
    await session.close_chat(target_uid)
    return session.open_windows


@router.post("/messages", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    payload: SendMessageRequest, session: ChatSessionManager = Depends(get_chat_session)
) -> SendMessageResponse:
    """
    Sends a message. A partial mailbox update still returns 201, with a
    warning: the message itself was stored.
    """
    try:
        room_id = session.room_id_with(payload.target.uid)
        message_id = await session.send(payload.target, payload.text)
    except PartialMailboxWrite as e:
        return SendMessageResponse(message_id=e.message_id or "", room_id=e.room_id, warning=str(e))
    except ChatError as e:
        raise_http(e)

    return SendMessageResponse(message_id=message_id, room_id=room_id)


@router.get("/rooms", response_model=RoomListResponse)
async def get_rooms(
    limit: Optional[int] = Query(None, ge=0),
    runtime: ChatRuntime = Depends(get_runtime),
    session: ChatSessionManager = Depends(get_chat_session),
) -> RoomListResponse:
    """
    The user's conversations, most recent first, with unread counts.
    """
    try:
        entries = runtime.ledger.entries_for_user(session.user.uid)
    except BackendUnavailable as e:
        raise_http(e)

    return RoomListResponse(
        total_unread=total_unread(entries, session.user.uid),
        rooms=summarize_rooms(entries, session.user.uid, limit),
    )


@router.get("/rooms/{peer_uid}/messages", response_model=List[Message])
async def get_messages(
    peer_uid: str,
    limit: int = Query(DEFAULT_RECENT_LIMIT, ge=0),
    runtime: ChatRuntime = Depends(get_runtime),
    session: ChatSessionManager = Depends(get_chat_session),
) -> List[Message]:
    """
    Retrieves the most recent messages exchanged with peer_uid.
    """
    try:
        return runtime.message_log.recent(session.room_id_with(peer_uid), limit)
    except ChatError as e:
        raise_http(e)


# === WebSocket Routes ===


async def _pump_to_socket(websocket: WebSocket, payloads: AsyncIterator[Any]) -> None:
    """
    Forwards payloads until either the stream ends or the client leaves.
    """

    async def pump() -> None:
        async for payload in payloads:
            await websocket.send_json(payload)

    async def drain() -> None:
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass

    pump_task = asyncio.create_task(pump())
    drain_task = asyncio.create_task(drain())
    done, pending = await asyncio.wait({pump_task, drain_task}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()

    for task in done:
        if task.exception() is not None:
            logger.warning("WebSocket stream ended with error: %s", task.exception())

    if drain_task not in done:
        # Stream ended first (window closed): hang up on the client.
        await websocket.close()


@router.websocket("/ws/rooms/{peer_uid}")
async def room_websocket(websocket: WebSocket, peer_uid: str) -> None:
    """
    Real-time message stream of an open chat window.
    Ends when the window is closed.
    """
    runtime = get_ws_runtime(websocket)
    await websocket.accept()

    session = runtime.session if runtime.is_authenticated() else None
    stream = session.messages(peer_uid) if session else None
    if stream is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Chat window is not open")
        return

    async def payloads() -> AsyncIterator[Dict[str, Any]]:
        async for message in stream:
            yield message.model_dump(mode="json")

    await _pump_to_socket(websocket, payloads())
    logger.info("Room WebSocket for %s finished", peer_uid)


@router.websocket("/ws/inbox")
async def inbox_websocket(websocket: WebSocket) -> None:
    """
    Pushes the rooms list and total unread count on every mailbox change.
    """
    runtime = get_ws_runtime(websocket)
    await websocket.accept()

    if not runtime.is_authenticated():
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Not logged in")
        return

    # Owned by the session: logout closes it, which hangs up the socket.
    session = runtime.session
    user = session.user
    stream = session.open_inbox()

    async def payloads() -> AsyncIterator[Dict[str, Any]]:
        async for entries in stream:
            yield RoomListResponse(
                total_unread=total_unread(entries, user.uid),
                rooms=summarize_rooms(entries, user.uid),
            ).model_dump(mode="json")

    try:
        await _pump_to_socket(websocket, payloads())
    finally:
        await session.close_inbox(stream)
