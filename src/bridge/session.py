"""Per-call session state owned by a SessionCoordinator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover
    from bridge.transport import FrameTransport


@dataclass
class CallClaimRecord:
    """Claim and caller-identity data stored by the call-claim collaborator."""

    assigned_to: str | None = None
    assigned_at: float | None = None
    caller_number: str | None = None
    caller_recorded_at: float | None = None


@dataclass(frozen=True, slots=True)
class BroadcastRecord:
    message_id: str
    message: dict[str, Any]
    timestamp: float


@dataclass
class Session:
    id: str
    created_at: float = 0.0
    last_activity: float = 0.0

    telephony: FrameTransport | None = None
    model: FrameTransport | None = None
    model_ready: bool = False
    primary_observer: FrameTransport | None = None
    observers: set[FrameTransport] = field(default_factory=set)

    config: dict[str, Any] | None = None
    api_key: str | None = None
    stream_sid: str | None = None
    call_sid: str | None = None

    # Barge-in timing, in telephony-clock milliseconds.
    last_assistant_item: str | None = None
    response_start_timestamp: int | None = None
    latest_media_timestamp: int | None = None

    # Recent broadcasts kept for UIs that poll instead of holding a socket.
    broadcasts: list[BroadcastRecord] = field(default_factory=list)

    claim: CallClaimRecord = field(default_factory=CallClaimRecord)

    def touch(self, now: float) -> None:
        self.last_activity = now

    def transports(self) -> list[FrameTransport]:
        """Every transport currently referenced by the session, without duplicates."""

        found: list[FrameTransport] = []
        for transport in (self.telephony, self.model, self.primary_observer, *self.observers):
            if transport is not None and transport not in found:
                found.append(transport)
        return found

    def live_connections(self) -> int:
        return sum(1 for transport in self.transports() if transport.is_open)

    def clear_call_state(self) -> None:
        """Drop everything scoped to the current phone call, keeping observers and config."""

        self.telephony = None
        self.model = None
        self.model_ready = False
        self.stream_sid = None
        self.call_sid = None
        self.last_assistant_item = None
        self.response_start_timestamp = None
        self.latest_media_timestamp = None

    def is_pristine(self) -> bool:
        return not self.transports() and self.config is None and self.stream_sid is None

    def reset(self, now: float) -> None:
        """Return every field to its initial state.

        The session id and the claim record survive; claims outlive the call
        so that operators can still verify a caller after hang-up.
        """

        fresh = Session(id=self.id, created_at=now, last_activity=now, claim=self.claim)
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(fresh, name))
