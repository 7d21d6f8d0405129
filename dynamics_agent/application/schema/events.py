from typing import Dict, Any, Optional, List
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
import json


class EventType(str, Enum):
    """Server-push event names"""
    THINKING = "thinking"
    TEXT_DELTA = "text_delta"
    RESPONSE = "response"
    COMPLETE = "complete"
    ERROR = "error"
    EXPORT_PROGRESS = "export_progress"
    FILE_READY = "file_ready"


class EventPayload(BaseModel):
    """Base for event payloads; serialized with camelCase keys"""
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ThinkingData(EventPayload):
    message: str


class TextDeltaData(EventPayload):
    text: str


class ResponseData(EventPayload):
    content: str


class UsageData(EventPayload):
    input_tokens: int = Field(0, alias="inputTokens")
    output_tokens: int = Field(0, alias="outputTokens")
    estimated_cost_usd: Optional[float] = Field(None, alias="estimatedCostUsd")


class CompleteData(EventPayload):
    """Terminal metadata for a finished request"""
    rounds: int
    max_rounds_reached: bool = Field(False, alias="maxRoundsReached")
    usage: Optional[UsageData] = None


class ErrorData(EventPayload):
    message: str
    details: Optional[str] = None


class ExportProgressData(EventPayload):
    processed: int
    total: int
    failed: int = 0


class FileReadyData(EventPayload):
    filename: str
    url: str
    row_count: int = Field(alias="rowCount")


class ChatRequest(BaseModel):
    """Body of POST /api/dynamics-explorer/chat"""
    model_config = ConfigDict(populate_by_name=True)

    # Validated into Messages by the chat service so bad input becomes an error event
    messages: List[Any] = Field(default_factory=list)
    session_id: Optional[str] = Field(None, alias="sessionId")


def format_sse(event: str, data: Dict[str, Any]) -> str:
    """One server-sent event frame"""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"
