"""Duplex JSON message channel to one peer (telephony, model or observer leg)."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str], Awaitable[None]]
CloseHandler = Callable[[], None]

_CLOSE = object()


class FrameTransport(ABC):
    """Base class for peer connections.

    ``send`` never blocks: messages are queued and written by a writer task that
    lives for as long as ``serve`` runs. ``close`` is queued behind any pending
    messages, so frames sent just before a close still go out.
    """

    def __init__(self, label: str) -> None:
        self.label = label
        self._outbox: asyncio.Queue[Any] = asyncio.Queue()
        self._open_listeners: list[Callable[[], None]] = []
        self._closing = False

    @property
    def is_open(self) -> bool:
        return not self._closing and self._connection_open()

    def send(self, message: dict[str, Any]) -> bool:
        if not self.is_open:
            LOGGER.debug("Dropping %s message on closed transport %s", message.get("type") or message.get("event"), self.label)
            return False
        self._outbox.put_nowait(message)
        return True

    def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._outbox.put_nowait(_CLOSE)

    def add_open_listener(self, listener: Callable[[], None]) -> None:
        self._open_listeners.append(listener)

    def _notify_open(self) -> None:
        listeners, self._open_listeners = self._open_listeners, []
        for listener in listeners:
            listener()

    async def serve(self, on_message: MessageHandler, on_close: CloseHandler) -> None:
        """Read until the peer goes away, then report the closure exactly once."""

        writer = asyncio.create_task(self._write_loop())
        try:
            async for text in self._receive():
                await on_message(text)
        except Exception:
            LOGGER.exception("Transport %s failed", self.label)
        finally:
            self._closing = True
            writer.cancel()
            on_close()

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            if message is _CLOSE:
                await self._close_connection()
                return
            try:
                await self._send_text(json.dumps(message))
            except Exception as exc:
                LOGGER.warning("Send on %s failed: %s", self.label, exc)
                self._closing = True
                try:
                    await self._close_connection()
                except Exception as close_exc:
                    LOGGER.debug("Closing %s after failed send raised: %s", self.label, close_exc)
                return

    @abstractmethod
    def _connection_open(self) -> bool:
        """Return True while the underlying socket accepts writes."""

    @abstractmethod
    def _receive(self) -> AsyncIterator[str]:
        """Yield text frames until the peer disconnects."""

    @abstractmethod
    async def _send_text(self, text: str) -> None:
        ...

    @abstractmethod
    async def _close_connection(self) -> None:
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.label}>"
