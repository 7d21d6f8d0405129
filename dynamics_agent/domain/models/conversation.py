from typing import Dict, Any, List, Optional, Union, Literal, Annotated
from pydantic import BaseModel, Field
from enum import Enum


class ToolName(str, Enum):
    """Tools the model may call"""
    SEARCH = "search"
    GET_ENTITY = "get_entity"
    GET_RELATED = "get_related"
    DESCRIBE_TABLE = "describe_table"
    QUERY_RECORDS = "query_records"
    COUNT_RECORDS = "count_records"
    FIND_REPORTS_DUE = "find_reports_due"
    EXPORT_CSV = "export_csv"


class TextBlock(BaseModel):
    """Plain text content"""
    type: Literal["text"] = "text"
    text: str = ""


class ToolUseBlock(BaseModel):
    """A tool call requested by the model"""
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultBlock(BaseModel):
    """Result of a tool call, always serialized to a string"""
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str


ContentBlock = Annotated[
    Union[TextBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type")
]


class Message(BaseModel):
    """One conversation turn"""
    role: Literal["user", "assistant"]
    content: Union[str, List[ContentBlock]]

    @property
    def is_tool_result_round(self) -> bool:
        """True for user messages that carry tool results"""
        return (
            self.role == "user"
            and isinstance(self.content, list)
            and len(self.content) > 0
            and isinstance(self.content[0], ToolResultBlock)
        )

    @property
    def tool_calls(self) -> List[ToolUseBlock]:
        if not isinstance(self.content, list):
            return []
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to the provider's message format"""
        return self.model_dump()


class Restriction(BaseModel):
    """Access restriction on a table or a single field"""
    table_name: str
    field_name: Optional[str] = None
    restriction_type: Literal["block", "mask"] = "block"
    reason: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.table_name}.{self.field_name}" if self.field_name else self.table_name


class RelationshipQuery(BaseModel):
    """Arguments of a relationship traversal"""
    source_type: str
    target_type: str
    source_id: Optional[str] = None
    source_name: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None


class Usage(BaseModel):
    """Token usage reported by the model provider"""
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens
        )


class ParsedResponse(BaseModel):
    """Structured result of one streamed model call"""
    content_blocks: List[ContentBlock] = Field(default_factory=list)
    model_used: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)
    stop_reason: Optional[str] = None
    text_was_streamed_live: bool = False

    @property
    def tool_calls(self) -> List[ToolUseBlock]:
        return [block for block in self.content_blocks if isinstance(block, ToolUseBlock)]

    @property
    def text(self) -> str:
        return "\n".join(block.text for block in self.content_blocks if isinstance(block, TextBlock))

    def to_message(self) -> Message:
        return Message(role="assistant", content=list(self.content_blocks))


class RoundState(BaseModel):
    """Per-request bookkeeping across loop rounds"""
    round: int = 0
    usage: Usage = Field(default_factory=Usage)
    models_used: List[str] = Field(default_factory=list)
    denied_calls: int = 0
    max_rounds_reached: bool = False

    def record_response(self, parsed: ParsedResponse) -> None:
        self.usage = self.usage.add(parsed.usage)
        if parsed.model_used and parsed.model_used not in self.models_used:
            self.models_used.append(parsed.model_used)
