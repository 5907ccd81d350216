import asyncio

from app.core.events import EventType, PipelineEvent, encode_sse, smooth_words


async def _from_list(events):
    for event in events:
        yield event


async def _collect(iterator):
    return [item async for item in iterator]


def test_smooth_words_rechunks_on_word_boundaries():
    source = [PipelineEvent.text_delta(chunk) for chunk in ["Hel", "lo wor", "ld, how ", "are", " you"]]

    out = asyncio.run(_collect(smooth_words(_from_list(source))))

    deltas = [event.data["delta"] for event in out]
    assert deltas == ["Hello ", "world, ", "how ", "are ", "you"]
    assert "".join(deltas) == "Hello world, how are you"


def test_smooth_words_flushes_before_non_text_events():
    source = [
        PipelineEvent.text_delta("partial"),
        PipelineEvent.tool_call("call-1", "getWeather", {"latitude": 1, "longitude": 2}),
        PipelineEvent.text_delta("after"),
        PipelineEvent.done(),
    ]

    out = asyncio.run(_collect(smooth_words(_from_list(source))))

    assert [event.type for event in out] == [
        EventType.TEXT_DELTA,
        EventType.TOOL_CALL,
        EventType.TEXT_DELTA,
        EventType.DONE,
    ]
    assert out[0].data["delta"] == "partial"
    assert out[2].data["delta"] == "after"


def test_event_json_round_trip_and_sse_framing():
    event = PipelineEvent.status_note("Searching for relevant information...")

    assert PipelineEvent.from_json(event.to_json()) == event
    frames = asyncio.run(_collect(encode_sse(_from_list([event, PipelineEvent.done()]))))
    assert frames[0] == 'event: status-note\ndata: {"note": "Searching for relevant information..."}\n\n'
    assert frames[1] == 'event: done\ndata: {"status": "ok"}\n\n'


def test_append_message_carries_serialized_message():
    event = PipelineEvent.append_message({"id": "a1", "role": "assistant"})

    assert event.type is EventType.APPEND_MESSAGE
    assert event.data["message"] == '{"id": "a1", "role": "assistant"}'
