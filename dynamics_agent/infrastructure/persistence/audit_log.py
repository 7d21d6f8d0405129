from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, Set, Union
from datetime import datetime, timezone
from pydantic import BaseModel, Field
import asyncio
import structlog

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class QueryLogEntry(BaseModel):
    """One executed tool call"""
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    tool_name: str
    table_name: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    record_count: Optional[int] = None
    execution_time_ms: float = 0.0
    denied: bool = False
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class UsageLogEntry(BaseModel):
    """Token use for one chat request"""
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    rounds: int = 0
    estimated_cost_usd: Optional[float] = None
    timestamp: datetime = Field(default_factory=_now)


AuditEntry = Union[QueryLogEntry, UsageLogEntry]


class AuditSink(ABC):
    """Destination for audit entries"""

    @abstractmethod
    async def write(self, entry: AuditEntry):
        pass


class StructlogAuditSink(AuditSink):
    """Writes audit entries to the structured log"""

    def __init__(self):
        self.logger = structlog.get_logger("dynamics_agent.audit")

    async def write(self, entry: AuditEntry):
        event = "tool_query" if isinstance(entry, QueryLogEntry) else "usage"
        self.logger.info(event, **entry.model_dump(mode="json"))


class AuditLogger:
    """Fire-and-forget audit recording"""

    def __init__(self, sink: Optional[AuditSink] = None):
        self.sink = sink or StructlogAuditSink()
        self._pending: Set[asyncio.Task] = set()

    def record(self, entry: AuditEntry) -> asyncio.Task:
        """Schedule a write; the caller never waits on it"""

        task = asyncio.create_task(self._write(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self, entry: AuditEntry):
        try:
            await self.sink.write(entry)
        except Exception as e:
            logger.warning("Audit write failed", entry_type=type(entry).__name__, error=str(e))

    async def drain(self):
        """Wait for outstanding writes (shutdown and tests)"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
