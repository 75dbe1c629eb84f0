"""Session registry and inactivity supervisor."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from bridge.coordinator import SessionCoordinator
from bridge.messages import Ack, Broadcast, GetBroadcasts, SessionMessage

LOGGER = logging.getLogger(__name__)

CoordinatorFactory = Callable[[str, "SessionRegistry"], SessionCoordinator]

# Messages that neither write to nor depend on a session that does not exist yet.
_PASSIVE_MESSAGES = (Broadcast, GetBroadcasts)


class SessionRegistry:
    """Creates, addresses and garbage-collects session coordinators.

    Sessions reach each other only through ``send``; callers get an ``Ack``
    back and never a reference to the addressed session.
    """

    def __init__(
        self,
        factory: CoordinatorFactory,
        *,
        cleanup_timeout: float = 300.0,
        check_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory
        self._cleanup_timeout = cleanup_timeout
        self._check_interval = check_interval
        self._clock = clock
        self._sessions: dict[str, SessionCoordinator] = {}
        self._supervisor: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> SessionCoordinator | None:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> SessionCoordinator:
        coordinator = self._sessions.get(session_id)
        if coordinator is None:
            coordinator = self._factory(session_id, self)
            self._sessions[session_id] = coordinator
            LOGGER.info("Created session %s", session_id)
        return coordinator

    async def send(self, session_id: str, message: SessionMessage) -> Ack:
        coordinator = self._sessions.get(session_id)
        if coordinator is None:
            if isinstance(message, _PASSIVE_MESSAGES):
                return Ack(ok=True)
            coordinator = self.get_or_create(session_id)
        return await coordinator.handle_mailbox(message)

    async def destroy(self, session_id: str) -> None:
        coordinator = self._sessions.pop(session_id, None)
        if coordinator is not None:
            await coordinator.shutdown()
            LOGGER.info("Destroyed session %s", session_id)

    async def sweep(self, now: float | None = None) -> list[str]:
        """Apply the inactivity rules once; returns the evicted session ids."""

        now = self._clock() if now is None else now
        evicted: list[str] = []
        for session_id, coordinator in list(self._sessions.items()):
            session = coordinator.session
            idle = now - session.last_activity

            if session.live_connections() == 0 and idle > self._cleanup_timeout:
                LOGGER.info("Session %s inactive for %.0fs, evicting", session_id, idle)
                await self.destroy(session_id)
                evicted.append(session_id)
            elif (
                session.telephony is None
                and not session.observers
                and not session.is_pristine()
                and idle > self._cleanup_timeout / 2
            ):
                LOGGER.info("Session %s has no call and no observers, resetting", session_id)
                coordinator.reset()
        return evicted

    def start(self) -> None:
        if self._supervisor is None or self._supervisor.done():
            self._supervisor = asyncio.create_task(self._supervise())

    async def _supervise(self) -> None:
        while True:
            await asyncio.sleep(self._check_interval)
            try:
                await self.sweep()
            except Exception:
                LOGGER.exception("Session sweep failed")

    async def aclose(self) -> None:
        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None:
            supervisor.cancel()
            await asyncio.gather(supervisor, return_exceptions=True)
        for session_id in list(self._sessions):
            await self.destroy(session_id)
