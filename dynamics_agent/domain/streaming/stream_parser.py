"""
Incremental parser for the model provider's server-sent event stream.

The provider sends ``data:`` lines holding one JSON event each. Content
arrives as blocks addressed by index: text blocks grow through
``text_delta`` fragments and tool-use blocks through ``input_json_delta``
fragments that only form valid JSON once the block is closed.

Text is forwarded to an optional live callback only once the message has
stopped without opening a tool-use block, so a preamble followed by a tool
call never reaches the client as if it were the answer.
"""
from typing import Dict, Any, List, Optional, Callable, AsyncIterator
from enum import Enum
import codecs
import json
import structlog

from dynamics_agent.domain.errors import ModelProviderError
from dynamics_agent.domain.models.conversation import (
    ContentBlock, ParsedResponse, TextBlock, ToolUseBlock, Usage
)

logger = structlog.get_logger(__name__)

TERMINAL_STOP_REASONS = {"end_turn", "max_tokens", "stop_sequence"}


class ParserState(str, Enum):
    """Position of the parser within one streamed message"""
    IDLE = "idle"
    MESSAGE_STARTED = "message_started"
    BLOCK_OPEN = "block_open"
    BLOCK_ACCUMULATING = "block_accumulating"
    BLOCK_CLOSED = "block_closed"
    DONE = "done"


def parse_tool_input(raw: str) -> Dict[str, Any]:
    """Parse accumulated tool-call JSON, falling back to an empty object"""

    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("Malformed tool input, using empty object", raw_preview=raw[:200])
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Tool input is not an object, using empty object", raw_preview=raw[:200])
        return {}
    return parsed


class _BlockAccumulator:
    def __init__(self, block_type: str, tool_id: Optional[str] = None, name: Optional[str] = None):
        self.block_type = block_type
        self.tool_id = tool_id
        self.name = name
        self.parts: List[str] = []
        self.input: Optional[Dict[str, Any]] = None

    def close(self):
        if self.block_type == "tool_use" and self.input is None:
            self.input = parse_tool_input("".join(self.parts))

    def to_block(self) -> ContentBlock:
        if self.block_type == "tool_use":
            self.close()
            return ToolUseBlock(id=self.tool_id or "", name=self.name or "", input=self.input or {})
        return TextBlock(text="".join(self.parts))


class StreamParser:
    """State machine that turns provider stream bytes into content blocks"""

    def __init__(
        self,
        on_text: Optional[Callable[[str], None]] = None
    ):
        self.on_text = on_text
        self.state = ParserState.IDLE

        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._line_buffer = ""
        self._blocks: Dict[int, _BlockAccumulator] = {}

        self._model_used: Optional[str] = None
        self._usage = Usage()
        self._stop_reason: Optional[str] = None

        self._tool_use_seen = False
        self._held: List[str] = []
        self._forwarded_any = False

        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            "message_start": self._on_message_start,
            "content_block_start": self._on_block_start,
            "content_block_delta": self._on_block_delta,
            "content_block_stop": self._on_block_stop,
            "message_delta": self._on_message_delta,
            "message_stop": self._on_message_stop,
            "error": self._on_error,
        }

    def feed(self, chunk: bytes) -> None:
        """Consume one chunk of the byte stream"""

        self._line_buffer += self._decoder.decode(chunk)
        while "\n" in self._line_buffer:
            line, self._line_buffer = self._line_buffer.split("\n", 1)
            self._handle_line(line.rstrip("\r"))

    def finish(self) -> ParsedResponse:
        """Flush buffered input and build the parsed response"""

        self._line_buffer += self._decoder.decode(b"", final=True)
        if self._line_buffer:
            line, self._line_buffer = self._line_buffer, ""
            self._handle_line(line.rstrip("\r"))

        if not self._tool_use_seen:
            self._flush_held()

        blocks = [self._blocks[index].to_block() for index in sorted(self._blocks)]
        self.state = ParserState.DONE

        return ParsedResponse(
            content_blocks=blocks,
            model_used=self._model_used,
            usage=self._usage,
            stop_reason=self._stop_reason,
            text_was_streamed_live=self._forwarded_any and not self._tool_use_seen
        )

    def _handle_line(self, line: str) -> None:
        if not line.startswith("data:"):
            return
        payload = line[len("data:"):].strip()
        if not payload or payload == "[DONE]":
            return
        try:
            event = json.loads(payload)
        except ValueError:
            logger.warning("Skipping unparseable stream event", payload_preview=payload[:200])
            return
        if not isinstance(event, dict):
            return
        self.handle_event(event)

    def handle_event(self, event: Dict[str, Any]) -> None:
        handler = self._handlers.get(event.get("type"))
        if handler:
            handler(event)

    def _on_message_start(self, event: Dict[str, Any]) -> None:
        message = event.get("message") or {}
        self._model_used = message.get("model")
        usage = message.get("usage") or {}
        self._usage = Usage(
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0
        )
        self.state = ParserState.MESSAGE_STARTED

    def _on_block_start(self, event: Dict[str, Any]) -> None:
        index = event.get("index", len(self._blocks))
        block = event.get("content_block") or {}
        block_type = block.get("type")

        if block_type == "tool_use":
            self._blocks[index] = _BlockAccumulator("tool_use", block.get("id"), block.get("name"))
            self._tool_use_seen = True
            self._held = []
        elif block_type == "text":
            accumulator = _BlockAccumulator("text")
            if block.get("text"):
                accumulator.parts.append(block["text"])
                self._forward_text(block["text"])
            self._blocks[index] = accumulator
        else:
            logger.debug("Ignoring content block", block_type=block_type)
            return
        self.state = ParserState.BLOCK_OPEN

    def _on_block_delta(self, event: Dict[str, Any]) -> None:
        accumulator = self._blocks.get(event.get("index"))
        if accumulator is None:
            return
        delta = event.get("delta") or {}
        delta_type = delta.get("type")

        if delta_type == "text_delta" and accumulator.block_type == "text":
            text = delta.get("text") or ""
            accumulator.parts.append(text)
            self._forward_text(text)
        elif delta_type == "input_json_delta" and accumulator.block_type == "tool_use":
            accumulator.parts.append(delta.get("partial_json") or "")
        self.state = ParserState.BLOCK_ACCUMULATING

    def _on_block_stop(self, event: Dict[str, Any]) -> None:
        accumulator = self._blocks.get(event.get("index"))
        if accumulator is not None:
            accumulator.close()
        self.state = ParserState.BLOCK_CLOSED

    def _on_message_delta(self, event: Dict[str, Any]) -> None:
        usage = event.get("usage") or {}
        if usage.get("output_tokens") is not None:
            self._usage = Usage(input_tokens=self._usage.input_tokens, output_tokens=usage["output_tokens"])
        stop_reason = (event.get("delta") or {}).get("stop_reason")
        if stop_reason:
            self._stop_reason = stop_reason
            if stop_reason in TERMINAL_STOP_REASONS and not self._tool_use_seen:
                self._flush_held()

    def _on_message_stop(self, event: Dict[str, Any]) -> None:
        self.state = ParserState.DONE

    def _on_error(self, event: Dict[str, Any]) -> None:
        error = event.get("error") or {}
        message = error.get("message") or "stream error"
        raise ModelProviderError(f"Claude stream error ({error.get('type', 'error')}): {message}")

    def _forward_text(self, text: str) -> None:
        if self._tool_use_seen or not self.on_text or not text:
            return
        self._held.append(text)

    def _flush_held(self) -> None:
        if not self._held or not self.on_text:
            return
        text = "".join(self._held)
        self._held = []
        self._forwarded_any = True
        self.on_text(text)


async def parse_stream(
    chunks: AsyncIterator[bytes],
    on_text: Optional[Callable[[str], None]] = None
) -> ParsedResponse:
    """Parse a complete provider stream"""

    parser = StreamParser(on_text=on_text)
    async for chunk in chunks:
        parser.feed(chunk)
    return parser.finish()
