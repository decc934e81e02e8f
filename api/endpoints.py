"""
API Endpoints for Challenge Engagement.

This module defines the REST and WebSocket endpoints of the Challenge
Engagement API. Every route goes through the `CommandBus`, so validation,
audit logging and change notification behave the same regardless of how a
procedure is reached.

Endpoints Provided:
- `POST /rpc/{procedure}`: Runs any registered procedure with a JSON params
  body and returns its `Outcome`. Business-rule violations come back as
  `success: false` outcomes with HTTP 200.
- Convenience GET routes for reads (`/friends`, `/users/search`,
  `/challenges/{id}/comments`, `/leaderboards/...`). These return the outcome
  with an HTTP status matching its error.
- `/users/{user_id}`, `/challenges/{challenge_id}`: Directory lookups of
  records owned by other services.
- `POST /leaderboards/{view}/snapshot`: Stores the current ranks of a view;
  meant for a nightly job.
- `/procedures`, `/sessions`, `/status`: Introspection.
- `/ws/changes/{session_id}`: WebSocket that forwards change notifications for
  a scoped subscription. With `view=participants` or `view=comments` it also
  pushes the challenge's merged records after every refresh.

Architectural Design:
- Separation of Concerns: REST and WebSocket endpoints are defined in separate
  routers (`router` and `websocket_router`).
- Dependency Injection: the command bus, the acting user id (`X-User-Id`) and
  the realtime reconciler are injected into the endpoint functions.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from core.database import get_database_info
from core.logging_config import log_function_call
from core.models import Outcome
from providers.change_provider import ENTITY_TYPES
from services.command_bus import CommandBus
from services.directory_service import DirectoryService
from services.realtime_service import (
    VIEW_KINDS,
    CollectionView,
    RealtimeReconciler,
    build_view,
)

from .dependencies import (
    get_actor_id,
    get_command_bus,
    get_directory_service,
    get_realtime_reconciler,
    is_valid_api_key,
)

logger = logging.getLogger(__name__)

MAX_PENDING_MESSAGES = 100


def enqueue_latest(queue: asyncio.Queue, message: Dict[str, Any], session_id: str) -> None:
    """Queue a message for the client, dropping the oldest one when the queue is full"""
    if queue.full():
        queue.get_nowait()
        logger.warning(f"Dropping oldest queued message for slow session {session_id}")
    queue.put_nowait(message)


router = APIRouter(tags=["Engagement"])
websocket_router = APIRouter(tags=["WebSocket Communication"])


def outcome_response(outcome: Outcome) -> JSONResponse:
    return JSONResponse(
        status_code=outcome.http_status, content=outcome.model_dump(mode="json")
    )


async def read(
    bus: CommandBus, procedure: str, params: Dict[str, Any], actor_id: Optional[str]
) -> JSONResponse:
    """Run a read procedure, dropping params the caller left out"""
    params = {k: v for k, v in params.items() if v is not None}
    return outcome_response(await bus.call(procedure, params, actor_id))


# RPC Endpoint
@router.post("/rpc/{procedure}", response_model=Outcome)
@log_function_call(logger)
async def call_procedure(
    procedure: str,
    params: Optional[Dict[str, Any]] = Body(default=None),
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    """Run a procedure and return its outcome"""
    if bus.get(procedure) is None:
        logger.warning(f"Unknown procedure requested: {procedure}")
    return await bus.call(procedure, params or {}, actor_id)


@router.get("/procedures")
async def list_procedures(bus: CommandBus = Depends(get_command_bus)):
    return {
        "procedures": [
            {
                "name": name,
                "mutation": bus.get(name).mutation,
                "requires_actor": bus.get(name).requires_actor,
            }
            for name in bus.procedure_names
        ]
    }


# Friendship reads
@router.get("/friends")
async def get_friends(
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(bus, "get_friends", {}, actor_id)


@router.get("/friends/requests")
async def get_friend_requests(
    status: str = Query("pending"),
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(bus, "get_friend_requests", {"status": status}, actor_id)


@router.get("/friends/suggestions")
async def get_friend_suggestions(
    limit: int = Query(10),
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(bus, "get_friend_suggestions", {"limit": limit}, actor_id)


@router.get("/friends/status/{target_id}")
async def get_friendship_status(
    target_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(bus, "get_friendship_status", {"target_id": target_id}, actor_id)


@router.get("/users/search")
async def search_users(
    q: str = Query(""),
    limit: int = Query(10),
    offset: int = Query(0),
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(
        bus, "search_users", {"query": q, "limit": limit, "offset": offset}, actor_id
    )


@router.get("/users/{user_id}")
async def get_user(
    user_id: str, directory: DirectoryService = Depends(get_directory_service)
):
    """Public identity of one user"""
    return await directory.get_user(user_id)


@router.get("/challenges/{challenge_id}")
async def get_challenge(
    challenge_id: str, directory: DirectoryService = Depends(get_directory_service)
):
    return await directory.get_challenge(challenge_id)


# Challenge reads
@router.get("/challenges/{challenge_id}/participation")
async def get_participation(
    challenge_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(bus, "get_participation", {"challenge_id": challenge_id}, actor_id)


@router.get("/challenges/{challenge_id}/history")
async def get_challenge_history(
    challenge_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(
        bus, "get_challenge_history", {"challenge_id": challenge_id}, actor_id
    )


@router.get("/challenges/{challenge_id}/participants")
async def get_challenge_participants(
    challenge_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(
        bus, "get_challenge_participants", {"challenge_id": challenge_id}, actor_id
    )


@router.get("/challenges/{challenge_id}/stats")
async def get_challenge_stats(
    challenge_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(bus, "get_challenge_stats", {"challenge_id": challenge_id}, actor_id)


@router.get("/challenges/{challenge_id}/comments")
async def get_challenge_comments(
    challenge_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(
        bus, "get_challenge_comments", {"challenge_id": challenge_id}, actor_id
    )


# Leaderboards
@router.get("/leaderboards/global")
async def get_global_leaderboard(
    timeframe: str = Query("all-time"),
    limit: Optional[int] = Query(None),
    offset: int = Query(0),
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(
        bus,
        "get_global_leaderboard",
        {"timeframe": timeframe, "limit": limit, "offset": offset},
        actor_id,
    )


@router.get("/leaderboards/streak")
async def get_streak_leaderboard(
    limit: Optional[int] = Query(None),
    offset: int = Query(0),
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(
        bus, "get_streak_leaderboard", {"limit": limit, "offset": offset}, actor_id
    )


@router.get("/leaderboards/challenges/{challenge_id}")
async def get_challenge_leaderboard(
    challenge_id: str,
    limit: Optional[int] = Query(None),
    offset: int = Query(0),
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    return await read(
        bus,
        "get_challenge_leaderboard",
        {"challenge_id": challenge_id, "limit": limit, "offset": offset},
        actor_id,
    )


@router.post("/leaderboards/{view}/snapshot")
@log_function_call(logger)
async def snapshot_leaderboard(
    view: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    bus: CommandBus = Depends(get_command_bus),
):
    """Persist the current ranks of a view (e.g. `global`, `streak`, `challenge:<id>`)"""
    return outcome_response(
        await bus.call("snapshot_leaderboard", {"view": view}, actor_id)
    )


# Status Endpoints
@router.get("/status")
async def get_api_status(
    reconciler: RealtimeReconciler = Depends(get_realtime_reconciler),
):
    """Get API status and statistics"""
    return {
        "status": "healthy",
        "service": "Challenge Engagement API",
        "realtime": reconciler.get_stats(),
        "database": await get_database_info(),
    }


@router.get("/sessions")
async def get_active_sessions(
    reconciler: RealtimeReconciler = Depends(get_realtime_reconciler),
):
    """Get information about active realtime sessions"""
    return reconciler.get_active_sessions()


# WebSocket Endpoint
def view_message(kind: str, view: CollectionView) -> Dict[str, Any]:
    return {
        "type": "view",
        "view": kind,
        "challenge_id": view.challenge_id,
        "records": [r.model_dump(mode="json") for r in view.records()],
    }


@websocket_router.websocket("/ws/changes/{session_id}")
async def websocket_changes(
    websocket: WebSocket,
    session_id: str,
    api_key: str = Query("", alias="api_key"),
    entity_types: str = Query(",".join(ENTITY_TYPES)),
    challenge_id: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    view_kind: Optional[str] = Query(None, alias="view"),
    bus: CommandBus = Depends(get_command_bus),
    reconciler: RealtimeReconciler = Depends(get_realtime_reconciler),
):
    """
    Forward change notifications for a scoped subscription.

    With `view=participants` or `view=comments` (and a `challenge_id`) the
    session also holds that view: the records are sent on connect and again
    after every refresh. Procedures called over the socket with
    `{"type": "call"}` run as the `X-User-Id` user and their results are
    merged into the view straight away.
    """
    if not is_valid_api_key(api_key):
        logger.warning(f"WebSocket authentication failed for session {session_id}")
        await websocket.close(code=4001, reason="Invalid API Key")
        return

    requested = [t.strip() for t in entity_types.split(",") if t.strip()]
    unknown = [t for t in requested if t not in ENTITY_TYPES]
    if unknown or not requested:
        await websocket.close(code=4002, reason=f"Unknown entity types: {unknown}")
        return

    view = None
    if view_kind is not None:
        if view_kind not in VIEW_KINDS or not challenge_id:
            await websocket.close(
                code=4002, reason=f"View {view_kind!r} needs a known kind and a challenge_id"
            )
            return
        view = build_view(
            view_kind,
            challenge_id,
            bus.participation,
            bus.comments,
            viewer_id=websocket.headers.get("x-user-id"),
        )
        requested += [t for t in view.entity_types if t not in requested]

    filters = {}
    if challenge_id:
        filters["challenge_id"] = challenge_id
    if user_id:
        filters["user_id"] = user_id

    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue(maxsize=MAX_PENDING_MESSAGES)

    def push(message: Dict[str, Any]) -> None:
        enqueue_latest(queue, message, session_id)

    async def forward():
        while True:
            await websocket.send_json(await queue.get())

    try:
        async with reconciler.subscription(
            session_id,
            requested,
            filters,
            view=view,
            listener=lambda event: push(
                {"type": "change", "data": event.model_dump(mode="json")}
            ),
            on_refresh=lambda refreshed: push(view_message(view_kind, refreshed)),
        ):
            await websocket.send_json(
                {
                    "type": "connected",
                    "session_id": session_id,
                    "entity_types": requested,
                    "filters": filters,
                    "view": view_kind,
                }
            )
            if view is not None:
                await view.refresh()
                await websocket.send_json(view_message(view_kind, view))

            sender = asyncio.create_task(forward())
            try:
                while True:
                    data = await websocket.receive_json()
                    if data.get("type") == "ping":
                        await websocket.send_json({"type": "pong"})
                    elif data.get("type") == "status":
                        await websocket.send_json(
                            {
                                "type": "status_response",
                                "session_id": session_id,
                                "session": reconciler.get_active_sessions().get(session_id),
                            }
                        )
                    elif data.get("type") == "call":
                        procedure = data.get("procedure", "")
                        outcome = await bus.call(
                            procedure,
                            data.get("params") or {},
                            websocket.headers.get("x-user-id"),
                        )
                        await websocket.send_json(
                            {
                                "type": "result",
                                "procedure": procedure,
                                "outcome": outcome.model_dump(mode="json"),
                            }
                        )
                        if (
                            outcome.success
                            and view is not None
                            and view.apply_result(procedure, outcome.data)
                        ):
                            push(view_message(view_kind, view))
            finally:
                sender.cancel()
                (result,) = await asyncio.gather(sender, return_exceptions=True)
                if isinstance(result, Exception):
                    logger.warning(f"Sending to session {session_id} failed: {result}")
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for session {session_id}")
    except Exception as e:
        logger.error(f"WebSocket error for session {session_id}: {e}")
