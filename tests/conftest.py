import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from dynamics_agent.domain.errors import CrmQueryError
from dynamics_agent.domain.streaming.streaming_handler import StreamingHandler
from dynamics_agent.infrastructure.config import Settings
from dynamics_agent.infrastructure.observability.logging import metrics


def sse(event: Dict[str, Any]) -> bytes:
    return f"event: {event['type']}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n".encode("utf-8")


def text_response(text: str, model: str = "claude-sonnet-4-20250514", usage=(100, 20)) -> List[Dict[str, Any]]:
    """Provider events for a plain text answer"""
    return [
        {"type": "message_start", "message": {"model": model, "usage": {"input_tokens": usage[0], "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": usage[1]}},
        {"type": "message_stop"},
    ]


def tool_response(
    calls: List[Dict[str, Any]],
    preamble: Optional[str] = None,
    model: str = "claude-sonnet-4-20250514",
    usage=(200, 40)
) -> List[Dict[str, Any]]:
    """Provider events for a round of tool calls; each call is {id, name, input}"""

    events = [{"type": "message_start", "message": {"model": model, "usage": {"input_tokens": usage[0], "output_tokens": 1}}}]
    index = 0
    if preamble:
        events += [
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": preamble}},
            {"type": "content_block_stop", "index": 0},
        ]
        index = 1
    for call in calls:
        raw = json.dumps(call.get("input", {}))
        events += [
            {"type": "content_block_start", "index": index,
             "content_block": {"type": "tool_use", "id": call["id"], "name": call["name"], "input": {}}},
            {"type": "content_block_delta", "index": index, "delta": {"type": "input_json_delta", "partial_json": raw[:5]}},
            {"type": "content_block_delta", "index": index, "delta": {"type": "input_json_delta", "partial_json": raw[5:]}},
            {"type": "content_block_stop", "index": index},
        ]
        index += 1
    events += [
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": usage[1]}},
        {"type": "message_stop"},
    ]
    return events


class ScriptedModelClient:
    """Model client that replays scripted provider streams and completions"""

    def __init__(self, streams: Optional[List[List[Dict[str, Any]]]] = None, completions: Optional[List[Any]] = None):
        self.streams = list(streams or [])
        self.completions = list(completions or [])
        self.stream_calls: List[Dict[str, Any]] = []
        self.complete_calls: List[Dict[str, Any]] = []

    async def stream_message(self, system, messages, tools=None):
        self.stream_calls.append({"system": system, "messages": messages, "tools": tools})
        if not self.streams:
            raise AssertionError("no scripted stream left")
        for event in self.streams.pop(0):
            yield sse(event)

    async def complete(self, system, messages, max_tokens=None):
        self.complete_calls.append({"system": system, "messages": messages})
        if not self.completions:
            raise AssertionError("no scripted completion left")
        item = self.completions.pop(0)
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(system, messages)
        return item


def completion(text: str, model: str = "claude-sonnet-4-20250514", usage=(300, 90)) -> Dict[str, Any]:
    return {
        "model": model,
        "content": [{"type": "text", "text": text}],
        "usage": {"input_tokens": usage[0], "output_tokens": usage[1]},
    }


Responder = Union[Dict[str, Any], Callable[..., Any], Exception]


class FakeCrm:
    """In-memory stand-in for the Dataverse client; records every call"""

    def __init__(self):
        self.calls: List[tuple] = []
        self.query_handler: Optional[Callable[..., Dict[str, Any]]] = None
        self.records: Dict[str, Dict[str, Any]] = {}
        self.search_result: Responder = {"results": [], "totalCount": 0}
        self.counts: Dict[str, int] = {}
        self.all_records: List[Dict[str, Any]] = []
        self.delays: Dict[str, float] = {}
        self.completed: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def resolve_entity_set(self, table_name: str) -> str:
        from dynamics_agent.infrastructure.crm.dynamics_client import KNOWN_ENTITY_SETS
        return KNOWN_ENTITY_SETS.get(table_name, table_name)

    async def query_records(self, entity_set, select=None, filter=None, orderby=None, top=None, expand=None):
        self.calls.append(("query_records", entity_set, {"select": select, "filter": filter, "orderby": orderby, "top": top}))
        if self.query_handler is None:
            return {"records": [], "count": 0, "totalCount": 0, "hasMore": False}
        result = self.query_handler(entity_set, select=select, filter=filter, orderby=orderby, top=top)
        records = result.get("records", [])
        result.setdefault("count", len(records))
        result.setdefault("totalCount", len(records))
        result.setdefault("hasMore", False)
        return result

    async def query_all(self, entity_set, select=None, filter=None, orderby=None, max_records=5000):
        self.calls.append(("query_all", entity_set, {"select": select, "filter": filter}))
        records = self.all_records[:max_records]
        return {"records": records, "totalCount": len(self.all_records), "capped": len(self.all_records) > max_records}

    async def get_record(self, entity_set, record_id, select=None, expand=None):
        self.calls.append(("get_record", entity_set, {"id": record_id}))
        if record_id not in self.records:
            raise CrmQueryError("Dynamics API error (404): not found", status_code=404)
        return dict(self.records[record_id])

    async def count_records(self, entity_set, filter=None):
        self.calls.append(("count_records", entity_set, {"filter": filter}))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(entity_set, 0))
        finally:
            self.in_flight -= 1
        self.completed.append(entity_set)
        return self.counts.get(entity_set, 0)

    async def search(self, search, entities=None, top=20, filter=None):
        self.calls.append(("search", None, {"search": search, "entities": entities, "top": top}))
        if isinstance(self.search_result, Exception):
            raise self.search_result
        return self.search_result

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


def drain(sink: StreamingHandler) -> List[tuple]:
    """Events queued on a handler, as (event, data) pairs"""

    events = []
    while not sink.queue.empty():
        item = sink.queue.get_nowait()
        if isinstance(item, tuple):
            events.append(item)
    return events


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        anthropic_api_key="test-key",
        anthropic_api_url="https://model.test/v1/messages",
        model="claude-sonnet-4-20250514",
        fallback_model="claude-3-5-haiku-20241022",
        dynamics_url="https://crm.test",
        dynamics_tenant_id="tenant",
        dynamics_client_id="client",
        dynamics_client_secret="secret",
        export_dir=str(tmp_path / "exports"),
        restrictions=[],
        user_roles={},
        environment="development",
        langfuse_public_key=None,
        langfuse_secret_key=None,
    )


@pytest.fixture
def crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture
def sink() -> StreamingHandler:
    return StreamingHandler(session_id="test-session")


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()
