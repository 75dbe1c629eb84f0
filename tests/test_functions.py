from __future__ import annotations

import asyncio
import json

import pytest

from bridge.errors import FunctionHandlerError, FunctionNotFoundError, MalformedArgumentsError
from bridge.events import FunctionCallRequest
from bridge.functions import FunctionHandler, FunctionTable, build_function_table


def _run(coro):
    return asyncio.run(coro)


def _echo_table() -> FunctionTable:
    async def echo(args):
        return {"echo": args}

    def explode(args):
        raise ValueError("bad input")

    return FunctionTable(
        [
            FunctionHandler(schema={"type": "function", "name": "echo"}, handler=echo),
            FunctionHandler(schema={"type": "function", "name": "explode"}, handler=explode),
        ]
    )


def test_builtin_prescription_lookup_returns_json_record():
    table = build_function_table()
    output = _run(table.dispatch(FunctionCallRequest(name="fetch_prescription_status_for_rosie", arguments="{}")))

    record = json.loads(output)
    assert record["patient"] == "Rosie"
    assert record["status"] == "Ready for pickup"
    assert record["refills_remaining"] == 3


def test_schemas_are_exposed_in_registration_order():
    assert [schema["name"] for schema in _echo_table().schemas()] == ["echo", "explode"]


def test_async_handler_receives_decoded_arguments():
    output = _run(_echo_table().dispatch(FunctionCallRequest(name="echo", arguments='{"order": 7}')))
    assert json.loads(output) == {"echo": {"order": 7}}


def test_empty_arguments_are_an_empty_object():
    output = _run(_echo_table().dispatch(FunctionCallRequest(name="echo", arguments="  ")))
    assert json.loads(output) == {"echo": {}}


def test_unknown_function_raises_not_found():
    with pytest.raises(FunctionNotFoundError, match="refund"):
        _run(_echo_table().dispatch(FunctionCallRequest(name="refund", arguments="{}")))


@pytest.mark.parametrize("arguments", ["{not json", "[1, 2]", "42"])
def test_malformed_arguments_raise(arguments):
    with pytest.raises(MalformedArgumentsError):
        _run(_echo_table().dispatch(FunctionCallRequest(name="echo", arguments=arguments)))


def test_handler_exception_is_wrapped():
    with pytest.raises(FunctionHandlerError) as excinfo:
        _run(_echo_table().dispatch(FunctionCallRequest(name="explode", arguments="{}")))
    assert isinstance(excinfo.value.__cause__, ValueError)
