"""Handshake for the realtime model leg."""

from __future__ import annotations

import logging

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

from bridge.errors import HandshakeError
from config.settings import Settings, get_settings
from integrations.websocket_transport import ClientWebSocketTransport

LOGGER = logging.getLogger(__name__)


def realtime_headers(api_key: str, beta_header: str) -> list[tuple[str, str]]:
    return [
        ("Authorization", f"Bearer {api_key}"),
        ("OpenAI-Beta", beta_header),
    ]


async def dial_realtime_model(api_key: str, *, settings: Settings | None = None) -> ClientWebSocketTransport:
    """Open the model WebSocket with the bearer credential and beta header.

    The returned transport is usually already open when this returns; callers
    must check ``is_open`` before waiting for an open notification.

    Raises:
        HandshakeError: if the upgrade fails or the endpoint is unreachable.
    """

    settings = settings or get_settings()
    url = settings.openai_realtime_url
    LOGGER.info("Connecting to realtime model: %s", url)
    try:
        connection = await connect(
            url,
            additional_headers=realtime_headers(api_key, settings.openai_beta_header),
            max_size=None,
        )
    except (OSError, TimeoutError, WebSocketException) as exc:
        raise HandshakeError(f"Realtime handshake failed: {exc}") from exc

    return ClientWebSocketTransport(connection, label="model")
