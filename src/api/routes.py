"""FastAPI routes for observers and the supporting HTTP surface."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, WebSocket

from api.dependencies import get_asset_store, get_function_table, get_registry
from api.schemas import (
    BroadcastStoredResponse,
    HealthResponse,
    HoldMusicFile,
    HoldMusicFilesResponse,
    HoldMusicOptionsResponse,
    PublicUrlResponse,
    StoredBroadcast,
    ToolSchema,
)
from api.twilio_routes import extract_session_id
from bridge.coordinator import OBSERVER_ROLES
from bridge.functions import FunctionTable
from bridge.messages import GetBroadcasts, StoreBroadcast
from bridge.registry import SessionRegistry
from config.settings import get_settings
from integrations.asset_store import AssetStore
from integrations.websocket_transport import ServerWebSocketTransport
from telephony.hold_music import hold_music_options

LOGGER = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/logs")
async def observer_stream(
    websocket: WebSocket,
    role: str = Query(default="primary"),
    registry: SessionRegistry = Depends(get_registry),
) -> None:
    settings = get_settings()
    session_id = extract_session_id(
        "logs",
        query=websocket.query_params,
        headers=websocket.headers,
        hub_session_id=settings.observer_hub_session_id,
    )
    if role not in OBSERVER_ROLES:
        LOGGER.warning("Unknown observer role %r, treating as secondary", role)
        role = "secondary"

    transport = ServerWebSocketTransport(websocket, label=f"observer:{session_id}")
    await transport.accept()

    coordinator = registry.get_or_create(session_id)
    coordinator.on_observer_connect(transport, role)

    async def on_message(text: str) -> None:
        await coordinator.receive_observer(transport, text)

    await transport.serve(on_message, lambda: coordinator.on_connection_closed(transport))


@router.get("/tools", response_model=list[ToolSchema])
async def list_tools(functions: FunctionTable = Depends(get_function_table)) -> list[ToolSchema]:
    return functions.schemas()


@router.get("/hold-music/files", response_model=HoldMusicFilesResponse)
async def list_hold_music_files(store: AssetStore = Depends(get_asset_store)) -> HoldMusicFilesResponse:
    assets = await store.list()
    return HoldMusicFilesResponse(files=[HoldMusicFile(name=asset.name, size=asset.size) for asset in assets])


@router.get("/hold-music/options", response_model=HoldMusicOptionsResponse)
async def list_hold_music_options() -> HoldMusicOptionsResponse:
    return HoldMusicOptionsResponse(options=hold_music_options())


@router.get("/public-url", response_model=PublicUrlResponse, response_model_by_alias=True)
async def public_url() -> PublicUrlResponse:
    return PublicUrlResponse(public_url=get_settings().public_base_url)


@router.get("/health", response_model=HealthResponse)
async def health(registry: SessionRegistry = Depends(get_registry)) -> HealthResponse:
    return HealthResponse(sessions=len(registry))


@router.post("/broadcast-registry/store-broadcast", response_model=BroadcastStoredResponse)
async def store_broadcast(
    body: StoredBroadcast,
    registry: SessionRegistry = Depends(get_registry),
) -> BroadcastStoredResponse:
    message = StoreBroadcast(message_id=body.message_id, message=body.message, timestamp=body.timestamp)
    ack = await registry.send(get_settings().broadcast_registry_session_id, message)
    LOGGER.info("Stored broadcast %s (%s)", body.message_id, body.message.get("type"))
    return BroadcastStoredResponse(ok=ack.ok)


@router.get("/broadcast-registry/get-broadcasts", response_model=list[StoredBroadcast])
async def get_broadcasts(
    last_message_id: str | None = Query(default=None, alias="lastMessageId"),
    registry: SessionRegistry = Depends(get_registry),
) -> list[StoredBroadcast]:
    ack = await registry.send(
        get_settings().broadcast_registry_session_id,
        GetBroadcasts(last_message_id=last_message_id),
    )
    return [
        StoredBroadcast(message_id=record.message_id, message=record.message, timestamp=record.timestamp)
        for record in ack.broadcasts
    ]
