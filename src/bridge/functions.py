"""Function table for model-initiated calls.

Handlers receive the decoded JSON arguments and return any JSON-serializable
value; the result is sent back to the model as a JSON string.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from bridge.errors import FunctionHandlerError, FunctionNotFoundError, MalformedArgumentsError
from bridge.events import FunctionCallRequest

LOGGER = logging.getLogger(__name__)

# Handlers may be plain functions or coroutine functions.
Handler = Callable[[dict[str, Any]], Any]


@dataclass(frozen=True, slots=True)
class FunctionHandler:
    schema: dict[str, Any]
    handler: Handler

    @property
    def name(self) -> str:
        return self.schema["name"]


class FunctionTable:
    """Built-in functions keyed by name."""

    def __init__(self, handlers: Iterable[FunctionHandler] = ()) -> None:
        self._handlers: dict[str, FunctionHandler] = {}
        for handler in handlers:
            self._handlers[handler.name] = handler

    def schemas(self) -> list[dict[str, Any]]:
        return [handler.schema for handler in self._handlers.values()]

    def get(self, name: str) -> FunctionHandler | None:
        return self._handlers.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    async def dispatch(self, call: FunctionCallRequest) -> str:
        """Run the handler for ``call`` and return its JSON-encoded result.

        Raises:
            FunctionNotFoundError: no handler is registered under ``call.name``.
            MalformedArgumentsError: ``call.arguments`` is not a JSON object.
            FunctionHandlerError: the handler raised or returned something
                that cannot be encoded as JSON.
        """

        entry = self._handlers.get(call.name)
        if entry is None:
            raise FunctionNotFoundError(f"No handler for function: {call.name}")

        try:
            args = json.loads(call.arguments) if call.arguments.strip() else {}
        except json.JSONDecodeError as exc:
            raise MalformedArgumentsError(f"Invalid arguments for {call.name}: {exc}") from exc
        if not isinstance(args, dict):
            raise MalformedArgumentsError(f"Arguments for {call.name} are not a JSON object")

        LOGGER.info("Calling function %s (call_id=%s)", call.name, call.call_id)
        try:
            result = entry.handler(args)
            if inspect.isawaitable(result):
                result = await result
            return json.dumps(result)
        except Exception as exc:
            raise FunctionHandlerError(f"Function {call.name} failed: {exc}") from exc


# Built-in functions


def _prescription_status_for_rosie(_: dict[str, Any]) -> dict[str, Any]:
    return {
        "patient": "Rosie",
        "patient_type": "animal",
        "species": "dog",
        "medication": "Simparica-Trio",
        "dosage": "30mg",
        "dosage_form": "tablet",
        "cost": "$100",
        "status": "Ready for pickup",
        "prescribing_by": "Forbin's Veterinary Clinic",
        "prescription_date": "2024-01-15",
        "expiry_date": "2025-01-15",
        "prescribing_vet": "Dr. Suzy Greenberg",
        "refills_remaining": 3,
        "note": "May give with treats",
    }


BUILTIN_FUNCTIONS: tuple[FunctionHandler, ...] = (
    FunctionHandler(
        schema={
            "type": "function",
            "name": "fetch_prescription_status_for_rosie",
            "description": "Get the current prescription status for Rosie the dog.",
            "parameters": {"type": "object", "properties": {}, "required": []},
        },
        handler=_prescription_status_for_rosie,
    ),
)


def build_function_table() -> FunctionTable:
    return FunctionTable(BUILTIN_FUNCTIONS)
