from __future__ import annotations

import asyncio
import json

from bridge.functions import FunctionHandler, FunctionTable
from fakes import FakeDialer, FakeTransport, build_registry, settle

CALL_ID = "call-CA1"


def _run(coro):
    return asyncio.run(coro)


def _start_event(stream_sid: str = "SD1", call_sid: str = "CA1") -> str:
    return json.dumps({"event": "start", "start": {"streamSid": stream_sid, "callSid": call_sid}})


def _media_event(payload: str, timestamp: int) -> str:
    return json.dumps({"event": "media", "media": {"payload": payload, "timestamp": str(timestamp)}})


def _function_call_done(name: str, call_id: str = "call_1", arguments: str = "{}") -> str:
    return json.dumps(
        {
            "type": "response.output_item.done",
            "item": {"type": "function_call", "name": name, "arguments": arguments, "call_id": call_id},
        }
    )


async def _start_call(coordinator, dialer: FakeDialer):
    telephony = FakeTransport("telephony")
    coordinator.on_telephony_connect(telephony, "sk-test")
    await coordinator.receive_telephony(_start_event())
    return telephony, (dialer.transports[-1] if dialer.transports else None)


def _slow_table(handler) -> FunctionTable:
    return FunctionTable(
        [
            FunctionHandler(
                schema={"type": "function", "name": "lookup_order", "parameters": {"type": "object"}},
                handler=handler,
            )
        ]
    )


def test_stream_start_dials_model_and_sends_merged_session(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)

        telephony, model = await _start_call(coordinator, dialer)
        assert dialer.api_keys == ["sk-test"]
        assert coordinator.session.stream_sid == "SD1"
        assert coordinator.session.call_sid == "CA1"
        assert coordinator.session.model is model
        assert coordinator.session.model_ready

        await coordinator.receive_model(json.dumps({"type": "session.created", "session": {"id": "sess_1"}}))
        assert model.types() == ["session.update", "conversation.item.create", "response.create"]

        session_config = model.sent[0]["session"]
        tool_names = [tool["name"] for tool in session_config["tools"]]
        assert "fetch_prescription_status_for_rosie" in tool_names
        assert session_config["voice"] == "sage"
        assert session_config["input_audio_format"] == "g711_ulaw"
        assert session_config["output_audio_format"] == "g711_ulaw"
        assert session_config["turn_detection"] == {"type": "server_vad"}
        assert model.sent[1]["item"]["role"] == "system"

        await coordinator.receive_telephony(_media_event("AAAA", 20))
        assert model.sent[-1] == {"type": "input_audio_buffer.append", "audio": "AAAA"}
        assert coordinator.session.latest_media_timestamp == 20

        await registry.aclose()

    _run(scenario())


def test_stored_config_overrides_defaults_but_not_builtin_tools(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)

        observer = FakeTransport("observer")
        coordinator.on_observer_connect(observer, "primary")
        await coordinator.receive_observer(
            observer,
            json.dumps(
                {
                    "type": "session.update",
                    "session": {
                        "voice": "alloy",
                        "tools": [
                            {"type": "function", "name": "check_store_hours"},
                            {"type": "function", "name": "fetch_prescription_status_for_rosie", "description": "x"},
                        ],
                    },
                }
            ),
        )

        _, model = await _start_call(coordinator, dialer)
        await coordinator.receive_model(json.dumps({"type": "session.created"}))

        merged = model.sent[0]["session"]
        assert merged["voice"] == "alloy"
        names = [tool["name"] for tool in merged["tools"]]
        assert names == ["fetch_prescription_status_for_rosie", "check_store_hours"]
        assert merged["tools"][0]["description"] != "x"

        await registry.aclose()

    _run(scenario())


def test_audio_delta_then_speech_started_truncates_at_elapsed_offset(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        telephony, model = await _start_call(coordinator, dialer)

        await coordinator.receive_telephony(_media_event("AAAA", 1000))
        await coordinator.receive_model(
            json.dumps({"type": "response.audio.delta", "item_id": "item1", "delta": "BBBB"})
        )
        assert coordinator.session.response_start_timestamp == 1000
        assert coordinator.session.last_assistant_item == "item1"
        assert telephony.sent[-2] == {"event": "media", "streamSid": "SD1", "media": {"payload": "BBBB"}}
        assert telephony.sent[-1] == {"event": "mark", "streamSid": "SD1", "mark": {"name": "responsePart"}}

        await coordinator.receive_telephony(_media_event("AAAA", 1400))
        await coordinator.receive_model(json.dumps({"type": "input_audio_buffer.speech_started"}))

        assert model.sent[-1] == {
            "type": "conversation.item.truncate",
            "item_id": "item1",
            "content_index": 0,
            "audio_end_ms": 400,
        }
        assert telephony.sent[-1] == {"event": "clear", "streamSid": "SD1"}
        assert coordinator.session.last_assistant_item is None
        assert coordinator.session.response_start_timestamp is None

        await registry.aclose()

    _run(scenario())


def test_speech_started_without_assistant_audio_sends_nothing(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        telephony, model = await _start_call(coordinator, dialer)

        await coordinator.receive_model(json.dumps({"type": "input_audio_buffer.speech_started"}))

        assert model.sent == []
        assert telephony.sent == []

        await registry.aclose()

    _run(scenario())


def test_truncation_elapsed_is_never_negative(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        _, model = await _start_call(coordinator, dialer)

        session = coordinator.session
        session.latest_media_timestamp = 100
        session.response_start_timestamp = 900
        session.last_assistant_item = "item2"
        coordinator.handle_truncation()

        assert model.sent[-1]["audio_end_ms"] == 0

        await registry.aclose()

    _run(scenario())


def test_new_telephony_connection_replaces_previous_one(settings):
    async def scenario():
        registry = build_registry(settings)
        coordinator = registry.get_or_create(CALL_ID)

        first = FakeTransport("telephony-1")
        second = FakeTransport("telephony-2")
        coordinator.on_telephony_connect(first, "sk-test")
        coordinator.on_telephony_connect(second, "sk-test")

        assert first.closed
        assert coordinator.session.telephony is second

        # The replaced leg reporting its closure must not tear down the new call.
        coordinator.on_connection_closed(first)
        assert coordinator.session.telephony is second

        await registry.aclose()

    _run(scenario())


def test_redial_replaces_dead_model_connection(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        telephony, first_model = await _start_call(coordinator, dialer)

        # Still open: a second stream start does not dial again.
        await coordinator.receive_telephony(_start_event())
        assert len(dialer.transports) == 1

        first_model.connected = False
        await coordinator.receive_telephony(_start_event())

        assert len(dialer.transports) == 2
        assert first_model.closed
        assert coordinator.session.model is dialer.transports[1]

        await registry.aclose()

    _run(scenario())


def test_model_not_yet_open_is_registered_from_open_listener(settings):
    async def scenario():
        dialer = FakeDialer(connected=False)
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        _, model = await _start_call(coordinator, dialer)

        assert coordinator.session.model is model
        assert not coordinator.session.model_ready

        await coordinator.receive_telephony(_media_event("AAAA", 20))
        assert model.sent == []

        model.mark_open()
        assert coordinator.session.model_ready

        await coordinator.receive_telephony(_media_event("CCCC", 40))
        assert model.sent == [{"type": "input_audio_buffer.append", "audio": "CCCC"}]

        await registry.aclose()

    _run(scenario())


def test_handshake_failure_keeps_session_usable(settings):
    async def scenario():
        dialer = FakeDialer(fail=True)
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        telephony, model = await _start_call(coordinator, dialer)

        assert model is None
        assert coordinator.session.model is None
        assert coordinator.session.telephony is telephony

        await coordinator.receive_telephony(_media_event("AAAA", 20))
        assert coordinator.session.latest_media_timestamp == 20

        dialer.fail = False
        await coordinator.receive_telephony(_start_event())
        assert coordinator.session.model is dialer.transports[0]

        await registry.aclose()

    _run(scenario())


def test_handshake_completing_after_hang_up_closes_new_socket(settings):
    async def scenario():
        dialer = FakeDialer()
        dialer.gate = asyncio.Event()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)

        telephony = FakeTransport("telephony")
        coordinator.on_telephony_connect(telephony, "sk-test")
        pending = asyncio.create_task(coordinator.receive_telephony(_start_event()))
        await settle()

        coordinator.on_connection_closed(telephony)
        dialer.gate.set()
        await pending

        assert dialer.transports[0].closed
        assert coordinator.session.model is None

        await registry.aclose()

    _run(scenario())


def test_replacement_leg_gets_model_dialed_for_previous_leg(settings):
    async def scenario():
        dialer = FakeDialer()
        dialer.gate = asyncio.Event()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)

        first = FakeTransport("telephony-1")
        coordinator.on_telephony_connect(first, "sk-test")
        pending = asyncio.create_task(coordinator.receive_telephony(_start_event("SD1")))
        await settle()

        second = FakeTransport("telephony-2")
        coordinator.on_telephony_connect(second, "sk-test")
        await coordinator.receive_telephony(_start_event("SD2", "CA1"))
        coordinator.on_connection_closed(first)

        dialer.gate.set()
        await pending

        assert len(dialer.api_keys) == 1
        model = dialer.transports[0]
        assert not model.closed
        assert coordinator.session.model is model
        assert coordinator.session.model_ready
        assert coordinator.session.telephony is second
        assert coordinator.session.stream_sid == "SD2"

        await coordinator.receive_telephony(_media_event("AAAA", 40))
        assert model.sent[-1] == {"type": "input_audio_buffer.append", "audio": "AAAA"}

        await registry.aclose()

    _run(scenario())


def test_function_call_result_is_sent_back_to_model(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        _, model = await _start_call(coordinator, dialer)

        await coordinator.receive_model(_function_call_done("fetch_prescription_status_for_rosie"))
        await settle()

        output, follow_up = model.sent[-2:]
        assert output["type"] == "conversation.item.create"
        assert output["item"]["type"] == "function_call_output"
        assert output["item"]["call_id"] == "call_1"
        assert json.loads(output["item"]["output"])["medication"] == "Simparica-Trio"
        assert follow_up == {"type": "response.create"}
        assert not coordinator.hold_music.is_playing

        await registry.aclose()

    _run(scenario())


def test_unregistered_function_sends_nothing_and_stops_hold_music(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        _, model = await _start_call(coordinator, dialer)

        await coordinator.receive_model(_function_call_done("cancel_subscription"))
        await settle()

        assert model.sent == []
        assert not coordinator.hold_music.is_playing

        await coordinator.receive_telephony(_media_event("AAAA", 20))
        assert model.sent == [{"type": "input_audio_buffer.append", "audio": "AAAA"}]

        await registry.aclose()

    _run(scenario())


def test_hold_music_covers_handler_and_stops_when_it_raises(settings):
    async def scenario():
        release = asyncio.Event()

        async def failing_lookup(args):
            await release.wait()
            raise RuntimeError("pharmacy system unavailable")

        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer, functions=_slow_table(failing_lookup))
        coordinator = registry.get_or_create(CALL_ID)
        telephony, model = await _start_call(coordinator, dialer)

        await coordinator.receive_model(_function_call_done("lookup_order"))
        await settle()
        assert coordinator.hold_music.is_playing
        assert telephony.sent and telephony.sent[0]["event"] == "media"

        release.set()
        await settle()

        assert not coordinator.hold_music.is_playing
        assert model.sent == []

        await coordinator.receive_telephony(_media_event("AAAA", 20))
        assert model.sent == [{"type": "input_audio_buffer.append", "audio": "AAAA"}]

        await registry.aclose()

    _run(scenario())


def test_handler_finishing_after_hang_up_sends_nothing(settings):
    async def scenario():
        release = asyncio.Event()

        async def slow_lookup(args):
            await release.wait()
            return {"status": "shipped"}

        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer, functions=_slow_table(slow_lookup))
        coordinator = registry.get_or_create(CALL_ID)
        telephony, model = await _start_call(coordinator, dialer)

        await coordinator.receive_model(_function_call_done("lookup_order"))
        await settle()

        coordinator.on_connection_closed(telephony)
        assert model.closed

        release.set()
        await settle()

        assert not coordinator.hold_music.is_playing
        assert "conversation.item.create" not in model.types()

        await registry.aclose()

    _run(scenario())


def test_function_calls_are_serialized_per_session(settings):
    async def scenario():
        started: list[str] = []
        release = asyncio.Event()

        async def lookup(args):
            started.append(args["order"])
            await release.wait()
            return {"order": args["order"]}

        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer, functions=_slow_table(lookup))
        coordinator = registry.get_or_create(CALL_ID)
        _, model = await _start_call(coordinator, dialer)

        await coordinator.receive_model(_function_call_done("lookup_order", "call_1", '{"order": "A"}'))
        await coordinator.receive_model(_function_call_done("lookup_order", "call_2", '{"order": "B"}'))
        await settle()
        assert started == ["A"]

        release.set()
        await settle(20)

        assert started == ["A", "B"]
        call_ids = [m["item"]["call_id"] for m in model.sent if m["type"] == "conversation.item.create"]
        assert call_ids == ["call_1", "call_2"]

        await registry.aclose()

    _run(scenario())


def test_observer_controls_hold_music_and_forwards_other_events(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        telephony, model = await _start_call(coordinator, dialer)

        observer = FakeTransport("observer")
        coordinator.on_observer_connect(observer, "primary")

        await coordinator.receive_observer(observer, json.dumps({"type": "hold_music.start"}))
        assert coordinator.hold_music.is_playing
        await coordinator.receive_observer(observer, json.dumps({"type": "hold_music.stop"}))
        assert not coordinator.hold_music.is_playing
        assert model.sent == []

        await coordinator.receive_observer(observer, json.dumps({"type": "response.cancel"}))
        assert model.sent == [{"type": "response.cancel"}]

        await coordinator.receive_model(json.dumps({"type": "response.done", "response": {"id": "r1"}}))
        assert observer.sent[-1] == {"type": "response.done", "response": {"id": "r1"}}

        await registry.aclose()

    _run(scenario())


def test_malformed_messages_are_dropped(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        _, model = await _start_call(coordinator, dialer)

        await coordinator.receive_telephony("not json")
        await coordinator.receive_telephony(json.dumps({"event": "media", "media": {}}))
        await coordinator.receive_model("[1, 2, 3]")

        await coordinator.receive_telephony(_media_event("AAAA", 20))
        assert model.sent == [{"type": "input_audio_buffer.append", "audio": "AAAA"}]

        await registry.aclose()

    _run(scenario())


def test_allowed_model_events_are_broadcast_to_hub_observers(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        await _start_call(coordinator, dialer)

        dashboard = FakeTransport("dashboard")
        registry.get_or_create("logs-shared").on_observer_connect(dashboard, "secondary")

        transcript = {"type": "response.audio_transcript.delta", "delta": "Hello"}
        await coordinator.receive_model(json.dumps(transcript))
        await coordinator.receive_model(json.dumps({"type": "rate_limits.updated"}))
        await settle()

        assert dashboard.sent == [transcript]

        await registry.aclose()

    _run(scenario())


def test_broadcast_without_hub_leaves_registry_untouched(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        await _start_call(coordinator, dialer)

        await coordinator.receive_model(json.dumps({"type": "response.audio_transcript.delta", "delta": "Hi"}))
        await settle()

        assert "logs-shared" not in registry
        assert len(registry) == 1

        await registry.aclose()

    _run(scenario())


def test_stream_close_resets_session(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        telephony, model = await _start_call(coordinator, dialer)
        observer = FakeTransport("observer")
        coordinator.on_observer_connect(observer, "primary")

        await coordinator.receive_telephony(json.dumps({"event": "close"}))

        assert telephony.closed
        assert model.closed
        assert observer.closed
        assert coordinator.session.is_pristine()
        assert CALL_ID in registry

        await registry.aclose()

    _run(scenario())


def test_telephony_hang_up_keeps_observers(settings):
    async def scenario():
        dialer = FakeDialer()
        registry = build_registry(settings, dialer=dialer)
        coordinator = registry.get_or_create(CALL_ID)
        telephony, model = await _start_call(coordinator, dialer)
        observer = FakeTransport("observer")
        coordinator.on_observer_connect(observer, "primary")

        await coordinator.receive_telephony(json.dumps({"event": "stop", "stop": {"callSid": "CA1"}}))
        assert not observer.closed
        assert coordinator.session.telephony is telephony

        coordinator.on_connection_closed(telephony)

        assert model.closed
        assert observer in coordinator.session.observers
        assert coordinator.session.telephony is None
        assert coordinator.session.stream_sid is None
        assert coordinator.session.primary_observer is observer
        assert not observer.closed

        await registry.aclose()

    _run(scenario())
