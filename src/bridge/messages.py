"""Messages exchanged between sessions through the SessionRegistry.

Sessions never touch each other's state directly; everything goes through
``SessionRegistry.send`` and comes back as an ``Ack``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from bridge.session import BroadcastRecord


@dataclass(frozen=True, slots=True)
class Broadcast:
    """Relay one model event to every observer of the addressed session."""

    event: dict[str, Any]


@dataclass(frozen=True, slots=True)
class StoreAssignment:
    session_id: str
    timestamp: float


@dataclass(frozen=True, slots=True)
class VerifyAssignment:
    session_id: str


@dataclass(frozen=True, slots=True)
class StoreCaller:
    caller_number: str
    timestamp: float


@dataclass(frozen=True, slots=True)
class VerifyCallerDigits:
    last_four_digits: str


@dataclass(frozen=True, slots=True)
class StoreBroadcast:
    """Append one message to the addressed session's broadcast backlog."""

    message_id: str
    message: dict[str, Any]
    timestamp: float


@dataclass(frozen=True, slots=True)
class GetBroadcasts:
    """Read the backlog after ``last_message_id``, or all of it when the id is unknown."""

    last_message_id: str | None = None


@dataclass(frozen=True, slots=True)
class Ack:
    ok: bool
    delivered: int = 0
    broadcasts: tuple[BroadcastRecord, ...] = ()


SessionMessage = Union[
    Broadcast,
    StoreAssignment,
    VerifyAssignment,
    StoreCaller,
    VerifyCallerDigits,
    StoreBroadcast,
    GetBroadcasts,
]
