"""Pydantic models for the three peer message vocabularies.

Each connection role speaks a closed set of event kinds. Kinds the bridge acts
on get their own model; anything else parses into the role's ``Other*`` model
so it can still be forwarded verbatim. Models keep unknown keys so that
``to_wire()`` reproduces what the peer sent.
"""

from __future__ import annotations

import json
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bridge.errors import ProtocolError


class PeerEvent(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


# Telephony leg (Twilio Media Streams)


class StartPayload(PeerEvent):
    stream_sid: str = Field(alias="streamSid")
    call_sid: str | None = Field(default=None, alias="callSid")


class MediaPayload(PeerEvent):
    payload: str
    timestamp: int = 0


class StreamStart(PeerEvent):
    event: Literal["start"]
    start: StartPayload


class Media(PeerEvent):
    event: Literal["media"]
    media: MediaPayload


class StreamClose(PeerEvent):
    """Explicit teardown request. A plain ``stop`` is left to the socket close."""

    event: Literal["close"]


class OtherTelephonyEvent(PeerEvent):
    event: str


TelephonyEvent = Union[StreamStart, Media, StreamClose, OtherTelephonyEvent]

_TELEPHONY_EVENTS: dict[str, type[PeerEvent]] = {
    "start": StreamStart,
    "media": Media,
    "close": StreamClose,
}


# Model leg (realtime API server events)


class SessionCreated(PeerEvent):
    type: Literal["session.created"]


class SpeechStarted(PeerEvent):
    type: Literal["input_audio_buffer.speech_started"]


class AudioDelta(PeerEvent):
    type: Literal["response.audio.delta"]
    delta: str
    item_id: str | None = None


class FunctionCallRequest(BaseModel):
    """A completed function-call item emitted by the model."""

    name: str
    arguments: str = ""
    call_id: str | None = None


class OutputItem(PeerEvent):
    type: str
    name: str | None = None
    arguments: str | None = None
    call_id: str | None = None


class OutputItemDone(PeerEvent):
    type: Literal["response.output_item.done"]
    item: OutputItem

    def function_call(self) -> FunctionCallRequest | None:
        if self.item.type != "function_call" or not self.item.name:
            return None
        return FunctionCallRequest(
            name=self.item.name,
            arguments=self.item.arguments or "",
            call_id=self.item.call_id,
        )


class OtherModelEvent(PeerEvent):
    type: str


ModelEvent = Union[SessionCreated, SpeechStarted, AudioDelta, OutputItemDone, OtherModelEvent]

_MODEL_EVENTS: dict[str, type[PeerEvent]] = {
    "session.created": SessionCreated,
    "input_audio_buffer.speech_started": SpeechStarted,
    "response.audio.delta": AudioDelta,
    "response.output_item.done": OutputItemDone,
}

BROADCAST_EVENT_TYPES = frozenset(
    {
        "session.created",
        "input_audio_buffer.speech_started",
        "conversation.item.created",
        "conversation.item.input_audio_transcription.completed",
        "response.content_part.added",
        "response.audio_transcript.delta",
        "response.output_item.done",
    }
)


# Observer leg (UI)


class SessionUpdate(PeerEvent):
    type: Literal["session.update"]
    session: dict[str, Any] = Field(default_factory=dict)


class HoldMusicStart(PeerEvent):
    type: Literal["hold_music.start"]
    hold_music_type: str | None = Field(default=None, alias="holdMusicType")


class HoldMusicStop(PeerEvent):
    type: Literal["hold_music.stop"]


class OtherObserverEvent(PeerEvent):
    type: str


ObserverEvent = Union[SessionUpdate, HoldMusicStart, HoldMusicStop, OtherObserverEvent]

_OBSERVER_EVENTS: dict[str, type[PeerEvent]] = {
    "session.update": SessionUpdate,
    "hold_music.start": HoldMusicStart,
    "hold_music.stop": HoldMusicStop,
}


def decode_message(text: str | bytes) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"Message is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError("Message is not a JSON object.")
    return data


def _parse(
    data: dict[str, Any],
    key: str,
    table: dict[str, type[PeerEvent]],
    fallback: type[PeerEvent],
) -> Any:
    model = table.get(str(data.get(key) or ""), fallback)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid {data.get(key)!r} message: {exc}") from exc


def parse_telephony_event(data: dict[str, Any]) -> TelephonyEvent:
    return _parse(data, "event", _TELEPHONY_EVENTS, OtherTelephonyEvent)


def parse_model_event(data: dict[str, Any]) -> ModelEvent:
    return _parse(data, "type", _MODEL_EVENTS, OtherModelEvent)


def parse_observer_event(data: dict[str, Any]) -> ObserverEvent:
    return _parse(data, "type", _OBSERVER_EVENTS, OtherObserverEvent)


# Outbound messages


def media_frame(stream_sid: str, payload: str) -> dict[str, Any]:
    return {"event": "media", "streamSid": stream_sid, "media": {"payload": payload}}


def mark_frame(stream_sid: str, name: str = "responsePart") -> dict[str, Any]:
    return {"event": "mark", "streamSid": stream_sid, "mark": {"name": name}}


def clear_frame(stream_sid: str) -> dict[str, Any]:
    return {"event": "clear", "streamSid": stream_sid}


def input_audio_append(payload: str) -> dict[str, Any]:
    return {"type": "input_audio_buffer.append", "audio": payload}


def truncate_item(item_id: str, audio_end_ms: int) -> dict[str, Any]:
    return {
        "type": "conversation.item.truncate",
        "item_id": item_id,
        "content_index": 0,
        "audio_end_ms": audio_end_ms,
    }


def session_update(session: dict[str, Any]) -> dict[str, Any]:
    return {"type": "session.update", "session": session}


def system_message(text: str) -> dict[str, Any]:
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "message",
            "role": "system",
            "content": [{"type": "input_text", "text": text}],
        },
    }


def function_call_output(call_id: str | None, output: str) -> dict[str, Any]:
    return {
        "type": "conversation.item.create",
        "item": {"type": "function_call_output", "call_id": call_id, "output": output},
    }


def response_create() -> dict[str, Any]:
    return {"type": "response.create"}
