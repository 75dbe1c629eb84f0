"""Twilio Media Streams integration.

Twilio connects one WebSocket per call; the call is mapped to a session id of
the form ``call-<CallSid>`` and handed to that session's coordinator.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping

from fastapi import APIRouter, Depends, WebSocket

from api.dependencies import get_registry
from bridge.registry import SessionRegistry
from config.settings import get_settings
from integrations.websocket_transport import ServerWebSocketTransport

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["twilio"])

SUBPROTOCOL_PREFIX = "call-CA"


def call_subprotocol(headers: Mapping[str, str]) -> str | None:
    """Return the offered ``call-CA...`` subprotocol, if any."""

    offered = headers.get("sec-websocket-protocol") or ""
    for protocol in offered.split(","):
        protocol = protocol.strip()
        if protocol.startswith(SUBPROTOCOL_PREFIX):
            return protocol
    return None


def extract_session_id(
    kind: str,
    *,
    query: Mapping[str, str],
    headers: Mapping[str, str],
    path_call_sid: str | None = None,
    hub_session_id: str = "logs-shared",
) -> str:
    """Map a connection to its session id.

    Lookup order: subprotocol, call path segment, ``callSid`` query parameter,
    ``X-Twilio-CallSid`` header. Observer connections without a call join the
    shared hub; anything else gets a generated id.
    """

    subprotocol = call_subprotocol(headers)
    if subprotocol:
        return f"call-{subprotocol.removeprefix('call-')}"

    if kind == "call" and path_call_sid and path_call_sid.startswith("CA"):
        return f"call-{path_call_sid}"

    call_sid = query.get("callSid")
    if call_sid:
        return f"call-{call_sid}"

    call_sid = headers.get("x-twilio-callsid")
    if call_sid:
        return f"call-{call_sid}"

    if kind == "logs":
        return hub_session_id

    return f"{kind}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


@router.websocket("/call")
@router.websocket("/call/{call_sid}")
async def call_stream(
    websocket: WebSocket,
    call_sid: str | None = None,
    registry: SessionRegistry = Depends(get_registry),
) -> None:
    settings = get_settings()
    session_id = extract_session_id(
        "call",
        query=websocket.query_params,
        headers=websocket.headers,
        path_call_sid=call_sid,
        hub_session_id=settings.observer_hub_session_id,
    )

    transport = ServerWebSocketTransport(websocket, label=f"telephony:{session_id}")
    await transport.accept(subprotocol=call_subprotocol(websocket.headers))
    LOGGER.info("Telephony stream connected for session %s", session_id)

    coordinator = registry.get_or_create(session_id)
    coordinator.on_telephony_connect(transport, settings.openai_api_key)
    await transport.serve(
        coordinator.receive_telephony,
        lambda: coordinator.on_connection_closed(transport),
    )
