from typing import Dict, Optional, AsyncIterator
import asyncio
import structlog

from dynamics_agent.application.schema.events import (
    EventType, EventPayload, ThinkingData, TextDeltaData, ResponseData,
    CompleteData, UsageData, ErrorData, ExportProgressData, FileReadyData, format_sse
)

logger = structlog.get_logger(__name__)

_CLOSED = object()


class StreamingHandler:
    """Queues named events for one client connection and renders them as SSE frames"""

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.events_sent: Dict[str, int] = {}

    def emit(self, event: EventType, payload: EventPayload):
        """Queue an event; events after close are dropped"""

        if self.closed:
            logger.debug("Event after close dropped", session_id=self.session_id, event_type=event.value)
            return
        self.events_sent[event.value] = self.events_sent.get(event.value, 0) + 1
        self.queue.put_nowait((event.value, payload.to_wire()))

    def send_thinking(self, message: str):
        self.emit(EventType.THINKING, ThinkingData(message=message))

    def text_delta(self, text: str):
        """Forward live answer text"""
        if text:
            self.emit(EventType.TEXT_DELTA, TextDeltaData(text=text))

    def response(self, content: str):
        self.emit(EventType.RESPONSE, ResponseData(content=content))

    def complete(self, rounds: int, max_rounds_reached: bool = False, usage: Optional[UsageData] = None):
        self.emit(
            EventType.COMPLETE,
            CompleteData(rounds=rounds, max_rounds_reached=max_rounds_reached, usage=usage)
        )

    def error(self, message: str, details: Optional[str] = None):
        self.emit(EventType.ERROR, ErrorData(message=message, details=details))

    def export_progress(self, processed: int, total: int, failed: int = 0):
        self.emit(EventType.EXPORT_PROGRESS, ExportProgressData(processed=processed, total=total, failed=failed))

    def file_ready(self, filename: str, url: str, row_count: int):
        self.emit(EventType.FILE_READY, FileReadyData(filename=filename, url=url, row_count=row_count))

    def close(self):
        """End the stream; safe to call more than once"""

        if self.closed:
            return
        self.closed = True
        self.queue.put_nowait(_CLOSED)

    async def events(self) -> AsyncIterator[str]:
        """Yield SSE frames until the handler is closed"""

        while True:
            item = await self.queue.get()
            if item is _CLOSED:
                break
            event, data = item
            yield format_sse(event, data)
