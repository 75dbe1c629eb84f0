"""Per-call session coordinator.

One coordinator owns one ``Session``: the telephony leg, the model leg and
any number of observer legs. All handlers run on the event loop; state may
change across the three suspension points (model handshake, function handler,
hold-music asset load) and is re-checked after each.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable, Coroutine
from typing import TYPE_CHECKING, Any

from bridge import events
from bridge.errors import BridgeError, ProtocolError
from bridge.events import (
    AudioDelta,
    FunctionCallRequest,
    HoldMusicStart,
    HoldMusicStop,
    Media,
    ModelEvent,
    ObserverEvent,
    OutputItemDone,
    SessionCreated,
    SessionUpdate,
    SpeechStarted,
    StreamClose,
    StreamStart,
    TelephonyEvent,
)
from bridge.functions import FunctionTable
from bridge.messages import (
    Ack,
    Broadcast,
    GetBroadcasts,
    SessionMessage,
    StoreAssignment,
    StoreBroadcast,
    StoreCaller,
    VerifyAssignment,
    VerifyCallerDigits,
)
from bridge.session import BroadcastRecord, Session
from bridge.transport import FrameTransport
from config.settings import Settings, get_settings
from telephony.hold_music import HoldMusicScheduler

if TYPE_CHECKING:  # pragma: no cover
    from bridge.registry import SessionRegistry

LOGGER = logging.getLogger(__name__)

ModelDialer = Callable[[str], Awaitable[FrameTransport]]

OBSERVER_ROLES = ("primary", "secondary")
BROADCAST_BACKLOG = 10


class SessionCoordinator:
    """Drives one call's interaction protocol."""

    def __init__(
        self,
        session_id: str,
        *,
        registry: SessionRegistry,
        dialer: ModelDialer,
        hold_music: HoldMusicScheduler,
        functions: FunctionTable,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock
        now = clock()
        self.session = Session(id=session_id, created_at=now, last_activity=now)
        self._registry = registry
        self._dialer = dialer
        self._hold_music = hold_music
        self._functions = functions
        self._dialing = False
        self._function_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def hold_music(self) -> HoldMusicScheduler:
        return self._hold_music

    # Connections

    def on_telephony_connect(self, transport: FrameTransport, api_key: str | None) -> None:
        session = self.session
        previous = session.telephony
        if previous is not None and previous is not transport:
            LOGGER.info("Session %s: replacing telephony connection", session.id)
            previous.close()
        session.telephony = transport
        session.api_key = api_key
        self._touch()

    def on_observer_connect(self, transport: FrameTransport, role: str = "primary") -> None:
        session = self.session
        session.observers.add(transport)
        if role == "primary":
            # The previous primary keeps listening as a plain observer.
            session.primary_observer = transport
        self._touch()
        LOGGER.info("Session %s: observer connected (%s, %d total)", session.id, role, len(session.observers))

    def on_connection_closed(self, transport: FrameTransport) -> None:
        session = self.session
        if transport is session.telephony:
            LOGGER.info("Session %s: telephony connection closed", session.id)
            self._cleanup_call()
        elif transport is session.model:
            LOGGER.info("Session %s: model connection closed", session.id)
            session.model = None
            session.model_ready = False
        if transport in session.observers:
            session.observers.discard(transport)
            if transport is session.primary_observer:
                session.primary_observer = None
        self._touch()

    def _cleanup_call(self) -> None:
        session = self.session
        self._hold_music.reset()
        if session.model is not None:
            session.model.close()
        session.clear_call_state()

    # Raw frame adapters used as transport message handlers

    async def receive_telephony(self, text: str) -> None:
        try:
            event = events.parse_telephony_event(events.decode_message(text))
        except ProtocolError as exc:
            LOGGER.warning("Session %s: dropping telephony message: %s", self.id, exc.detail)
            return
        await self._guard(self.on_telephony_message(event), "telephony")

    async def receive_model(self, text: str) -> None:
        try:
            event = events.parse_model_event(events.decode_message(text))
        except ProtocolError as exc:
            LOGGER.warning("Session %s: dropping model message: %s", self.id, exc.detail)
            return
        await self._guard(self.on_model_message(event), "model")

    async def receive_observer(self, transport: FrameTransport, text: str) -> None:
        try:
            event = events.parse_observer_event(events.decode_message(text))
        except ProtocolError as exc:
            LOGGER.warning("Session %s: dropping observer message: %s", self.id, exc.detail)
            return
        await self._guard(self.on_observer_message(transport, event), "observer")

    async def _guard(self, handler: Coroutine[Any, Any, None], role: str) -> None:
        try:
            await handler
        except Exception:
            LOGGER.exception("Session %s: error handling %s message", self.id, role)

    # Telephony leg

    async def on_telephony_message(self, event: TelephonyEvent) -> None:
        session = self.session
        self._touch()

        if isinstance(event, StreamStart):
            session.stream_sid = event.start.stream_sid
            session.call_sid = event.start.call_sid
            session.latest_media_timestamp = 0
            session.last_assistant_item = None
            session.response_start_timestamp = None
            LOGGER.info("Session %s: stream started (stream=%s, call=%s)", session.id, session.stream_sid, session.call_sid)
            await self.connect_model()
        elif isinstance(event, Media):
            session.latest_media_timestamp = max(session.latest_media_timestamp or 0, event.media.timestamp)
            self._send_model(events.input_audio_append(event.media.payload))
        elif isinstance(event, StreamClose):
            LOGGER.info("Session %s: stream closed by telephony", session.id)
            self.reset()
        else:
            LOGGER.debug("Session %s: ignoring telephony event %s", session.id, event.event)

    # Model leg

    async def connect_model(self) -> None:
        """Dial the model leg unless it is already up or being dialed."""

        session = self.session
        if session.telephony is None or not session.stream_sid or not session.api_key:
            LOGGER.debug("Session %s: not ready to dial the model", session.id)
            return
        if (session.model is not None and session.model.is_open) or self._dialing:
            return

        telephony = session.telephony
        self._dialing = True
        try:
            transport = await self._dialer(session.api_key)
        except Exception as exc:
            detail = exc.detail if isinstance(exc, BridgeError) else str(exc)
            LOGGER.error("Session %s: model handshake failed: %s", session.id, detail)
            return
        finally:
            self._dialing = False

        if session.telephony is None or not session.stream_sid:
            LOGGER.info("Session %s: call ended during model handshake", session.id)
            transport.close()
            return
        if session.telephony is not telephony:
            # The replacement leg's own start was skipped while this dial was pending.
            LOGGER.info("Session %s: telephony replaced during model handshake, keeping model leg", session.id)

        if session.model is not None:
            session.model.close()
        session.model = transport
        session.model_ready = False

        # The handshake may hand back a socket that is already open and will
        # never fire an open notification.
        if transport.is_open:
            self._register_model(transport)
        else:
            transport.add_open_listener(lambda: self._register_model(transport))

        self._spawn(transport.serve(self.receive_model, lambda: self.on_connection_closed(transport)))

    def _register_model(self, transport: FrameTransport) -> None:
        if self.session.model is not transport or self.session.model_ready:
            return
        self.session.model_ready = True
        LOGGER.info("Session %s: model connection live", self.id)

    def _send_model(self, message: dict[str, Any]) -> bool:
        model = self.session.model
        if model is None or not self.session.model_ready or not model.is_open:
            return False
        return model.send(message)

    async def on_model_message(self, event: ModelEvent) -> None:
        session = self.session
        self._touch()

        wire = event.to_wire()
        if session.primary_observer is not None:
            session.primary_observer.send(wire)
        if wire.get("type") in events.BROADCAST_EVENT_TYPES:
            self._spawn(self._broadcast(wire))

        if isinstance(event, SessionCreated):
            self._configure_model()
        elif isinstance(event, SpeechStarted):
            self.handle_truncation()
        elif isinstance(event, AudioDelta):
            self._relay_audio(event)
        elif isinstance(event, OutputItemDone):
            call = event.function_call()
            if call is not None:
                self._spawn(self.run_function_call(call))

    async def _broadcast(self, wire: dict[str, Any]) -> None:
        hub = self._settings.observer_hub_session_id
        ack = await self._registry.send(hub, Broadcast(event=wire))
        if not ack.ok:
            LOGGER.debug("Session %s: broadcast of %s not delivered", self.id, wire.get("type"))

    def session_config(self) -> dict[str, Any]:
        """Defaults, overlaid with the stored config, with the tool list forced."""

        config = dict(self.session.config or {})
        builtin = self._functions.schemas()
        builtin_names = {schema.get("name") for schema in builtin}
        extra = [
            tool
            for tool in config.get("tools") or []
            if isinstance(tool, dict) and tool.get("name") not in builtin_names
        ]
        defaults = {
            "modalities": ["text", "audio"],
            "turn_detection": {"type": "server_vad"},
            "voice": self._settings.default_voice,
            "input_audio_transcription": {"model": self._settings.transcription_model},
            "input_audio_format": "g711_ulaw",
            "output_audio_format": "g711_ulaw",
        }
        return {**defaults, **config, "tools": [*builtin, *extra]}

    def _configure_model(self) -> None:
        self._send_model(events.session_update(self.session_config()))
        self._send_model(events.system_message(self._settings.greeting_instruction))
        self._send_model(events.response_create())

    def handle_truncation(self) -> None:
        """Cut off the assistant utterance in flight, if there is one."""

        session = self.session
        if not session.last_assistant_item or session.response_start_timestamp is None:
            return

        elapsed = max(0, (session.latest_media_timestamp or 0) - session.response_start_timestamp)
        LOGGER.info("Session %s: caller interrupted %s at %d ms", session.id, session.last_assistant_item, elapsed)
        self._send_model(events.truncate_item(session.last_assistant_item, elapsed))
        if session.telephony is not None and session.stream_sid:
            session.telephony.send(events.clear_frame(session.stream_sid))

        session.last_assistant_item = None
        session.response_start_timestamp = None

    def _relay_audio(self, event: AudioDelta) -> None:
        session = self.session
        if session.telephony is None or not session.stream_sid:
            return
        if session.response_start_timestamp is None:
            session.response_start_timestamp = session.latest_media_timestamp or 0
        if event.item_id:
            session.last_assistant_item = event.item_id
        session.telephony.send(events.media_frame(session.stream_sid, event.delta))
        session.telephony.send(events.mark_frame(session.stream_sid))

    def _send_audio_to_stream(self, chunk: str) -> None:
        session = self.session
        if session.telephony is not None and session.stream_sid:
            session.telephony.send(events.media_frame(session.stream_sid, chunk))

    # Function calls

    async def run_function_call(self, call: FunctionCallRequest) -> None:
        """Run one model function call with hold music covering the wait.

        Calls are serialized per session. The result goes back only to the
        model leg that asked for it.
        """

        async with self._function_lock:
            model = self.session.model
            if not self._hold_music.is_playing:
                self._hold_music.start_soon(self._send_audio_to_stream)
            try:
                output = await self._functions.dispatch(call)
            except BridgeError as exc:
                LOGGER.error("Session %s: function call %s failed: %s", self.id, call.name, exc.detail)
                return
            finally:
                self._hold_music.stop()

            if model is None or self.session.model is not model:
                LOGGER.info("Session %s: dropping result of %s, model leg is gone", self.id, call.name)
                return
            self._send_model(events.function_call_output(call.call_id, output))
            self._send_model(events.response_create())

    # Observer legs

    async def on_observer_message(self, transport: FrameTransport, event: ObserverEvent) -> None:
        self._touch()

        if isinstance(event, HoldMusicStart):
            await self._hold_music.start(self._send_audio_to_stream, event.hold_music_type)
        elif isinstance(event, HoldMusicStop):
            self._hold_music.stop()
        else:
            if isinstance(event, SessionUpdate):
                self.session.config = event.session
            self._send_model(event.to_wire())

    # Mailbox

    async def handle_mailbox(self, message: SessionMessage) -> Ack:
        """Handle a message sent to this session through the registry."""

        session = self.session
        claim = session.claim
        if isinstance(message, Broadcast):
            delivered = sum(1 for observer in list(session.observers) if observer.send(message.event))
            return Ack(ok=True, delivered=delivered)

        self._touch()
        if isinstance(message, StoreAssignment):
            claim.assigned_to = message.session_id
            claim.assigned_at = message.timestamp
            return Ack(ok=True)
        if isinstance(message, VerifyAssignment):
            return Ack(ok=claim.assigned_to is not None and claim.assigned_to == message.session_id)
        if isinstance(message, StoreCaller):
            claim.caller_number = message.caller_number
            claim.caller_recorded_at = message.timestamp
            return Ack(ok=True)
        if isinstance(message, VerifyCallerDigits):
            if not claim.caller_number:
                return Ack(ok=False)
            expected = re.sub(r"\D", "", claim.caller_number)[-4:]
            given = re.sub(r"\D", "", message.last_four_digits)
            return Ack(ok=len(expected) == 4 and given == expected)
        if isinstance(message, StoreBroadcast):
            session.broadcasts.append(BroadcastRecord(message.message_id, message.message, message.timestamp))
            del session.broadcasts[:-BROADCAST_BACKLOG]
            return Ack(ok=True)
        if isinstance(message, GetBroadcasts):
            ids = [record.message_id for record in session.broadcasts]
            start = ids.index(message.last_message_id) + 1 if message.last_message_id in ids else 0
            return Ack(ok=True, broadcasts=tuple(session.broadcasts[start:]))

        LOGGER.warning("Session %s: unknown mailbox message %r", session.id, message)
        return Ack(ok=False)

    # Lifecycle

    def reset(self) -> None:
        """Close every connection and return the session to its initial state."""

        self._hold_music.reset()
        for transport in self.session.transports():
            transport.close()
        self.session.reset(self._clock())
        LOGGER.info("Session %s: reset", self.id)

    async def shutdown(self) -> None:
        self.reset()
        tasks, self._tasks = self._tasks, set()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _touch(self) -> None:
        self.session.touch(self._clock())

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
