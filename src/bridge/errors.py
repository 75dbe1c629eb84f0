"""Domain-specific exceptions for call bridging.

These exceptions are safe to import from API layers without pulling in the
websocket client or audio dependencies.
"""

from __future__ import annotations


class BridgeError(Exception):
    default_detail: str = "Bridge error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ProtocolError(BridgeError):
    default_detail = "Malformed peer message."


class FunctionNotFoundError(BridgeError):
    default_detail = "No handler registered for function."


class MalformedArgumentsError(BridgeError):
    default_detail = "Function arguments are not a JSON object."


class FunctionHandlerError(BridgeError):
    default_detail = "Function handler failed."


class HandshakeError(BridgeError):
    default_detail = "Model connection could not be established."
