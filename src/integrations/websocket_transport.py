"""FrameTransport implementations over FastAPI and ``websockets`` sockets."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from bridge.transport import FrameTransport

LOGGER = logging.getLogger(__name__)


class ServerWebSocketTransport(FrameTransport):
    """Inbound leg accepted by one of our WebSocket routes (telephony or observer)."""

    def __init__(self, websocket: WebSocket, label: str) -> None:
        super().__init__(label)
        self._websocket = websocket

    async def accept(self, subprotocol: str | None = None) -> None:
        await self._websocket.accept(subprotocol=subprotocol)
        self._notify_open()

    def _connection_open(self) -> bool:
        return (
            self._websocket.client_state is WebSocketState.CONNECTED
            and self._websocket.application_state is WebSocketState.CONNECTED
        )

    async def _receive(self) -> AsyncIterator[str]:
        try:
            while True:
                yield await self._websocket.receive_text()
        except WebSocketDisconnect:
            return

    async def _send_text(self, text: str) -> None:
        await self._websocket.send_text(text)

    async def _close_connection(self) -> None:
        if self._websocket.application_state is WebSocketState.CONNECTED:
            await self._websocket.close()


class ClientWebSocketTransport(FrameTransport):
    """Outbound leg dialed by the bridge (the realtime model)."""

    def __init__(self, connection: ClientConnection, label: str) -> None:
        super().__init__(label)
        self._connection = connection

    def _connection_open(self) -> bool:
        return self._connection.state is State.OPEN

    async def _receive(self) -> AsyncIterator[str]:
        try:
            async for message in self._connection:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                yield message
        except ConnectionClosed as exc:
            LOGGER.info("Connection %s closed: %s", self.label, exc)

    async def _send_text(self, text: str) -> None:
        await self._connection.send(text)

    async def _close_connection(self) -> None:
        await self._connection.close()
