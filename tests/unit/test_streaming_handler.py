import json

import pytest

from dynamics_agent.application.schema.events import UsageData, format_sse
from tests.conftest import drain


def test_format_sse_frame():
    frame = format_sse("text_delta", {"text": "Zürich"})

    assert frame == 'event: text_delta\ndata: {"text": "Zürich"}\n\n'


def test_complete_uses_camel_case_and_omits_empty_fields(sink):
    sink.complete(rounds=2, max_rounds_reached=False, usage=UsageData(input_tokens=10, output_tokens=5))

    assert drain(sink) == [("complete", {
        "rounds": 2,
        "maxRoundsReached": False,
        "usage": {"inputTokens": 10, "outputTokens": 5},
    })]


def test_empty_text_delta_is_skipped(sink):
    sink.text_delta("")
    sink.text_delta("Hi")

    assert drain(sink) == [("text_delta", {"text": "Hi"})]


def test_events_after_close_are_dropped(sink):
    sink.send_thinking("Analyzing your question...")
    sink.close()
    sink.close()
    sink.error("late")

    assert sink.events_sent == {"thinking": 1}
    assert drain(sink) == [("thinking", {"message": "Analyzing your question..."})]


@pytest.mark.asyncio
async def test_events_yields_frames_until_closed(sink):
    sink.send_thinking("Querying contacts...")
    sink.file_ready("a.csv", "/api/dynamics-explorer/exports/a.csv", 4)
    sink.close()

    frames = [frame async for frame in sink.events()]

    assert len(frames) == 2
    assert frames[0].startswith("event: thinking\n")
    event_line, data_line = frames[1].strip().split("\n")
    assert event_line == "event: file_ready"
    assert json.loads(data_line[len("data: "):]) == {
        "filename": "a.csv", "url": "/api/dynamics-explorer/exports/a.csv", "rowCount": 4,
    }
