from typing import List, Optional
import json
import structlog

from dynamics_agent.domain.models.conversation import Message, ToolResultBlock, ToolUseBlock
from dynamics_agent.infrastructure.config import Settings, get_settings
from dynamics_agent.infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)

TRIM_NOTICE = "[Earlier conversation context was trimmed to save tokens]"
TRIM_ACKNOWLEDGEMENT = "Understood, I'll work with the recent context."

SUMMARY_PASSTHROUGH_CHARS = 100


def summarize_tool_result(content: str) -> str:
    """Reduce a tool result to a one-line summary"""

    if not content or len(content) < SUMMARY_PASSTHROUGH_CHARS:
        return content

    prefix = content[:SUMMARY_PASSTHROUGH_CHARS] + "..."
    try:
        data = json.loads(content)
    except ValueError:
        return prefix
    if not isinstance(data, dict):
        return prefix

    if data.get("error"):
        return f"Error: {str(data['error'])[:80]}"
    if "totalCount" in data and "results" in data:
        return f"Search: {data['totalCount']} results"
    if isinstance(data.get("records"), list):
        return f"Returned {len(data['records'])} records"
    if "count" in data and "tables" in data:
        return f"Found {data['count']} tables"
    if "count" in data and "fields" in data:
        return f"Found {data['count']} fields"
    if "target" in data and "returned" in data:
        return f"Related {data['target']}: {data['returned']} of {data.get('totalMatched', data['returned'])}"
    if "reportCount" in data:
        return f"Reports: {data['reportCount']}"
    if "exported" in data:
        return f"Exported {data['exported']} records"
    if data.get("status") == "estimate":
        return f"Export estimate: {data.get('recordCount', 0)} records"
    if "record" in data:
        return f"Entity: {data.get('label') or data.get('type', 'record')}"
    if "count" in data:
        return f"Count: {data['count']}"
    return prefix


class ContextManager:
    """Keeps the conversation sent to the model within its token budget"""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.max_messages = settings.max_history_messages
        self.keep_recent = min(settings.keep_recent_messages, self.max_messages - 2)

    def trim(self, history: List[Message], session_id: Optional[str] = None) -> List[Message]:
        """Bound the incoming history, always keeping the newest user message"""

        cleaned = [Message(role=m.role, content=m.content) for m in history]
        if len(cleaned) <= self.max_messages:
            return cleaned

        tail_start = len(cleaned) - self.keep_recent
        tail = cleaned[tail_start:]

        last_user = None
        for index in range(len(cleaned) - 1, -1, -1):
            if cleaned[index].role == "user":
                last_user = index
                break
        if last_user is not None and last_user < tail_start:
            tail = [cleaned[last_user]] + tail[1:]

        trimmed = [
            Message(role="user", content=TRIM_NOTICE),
            Message(role="assistant", content=TRIM_ACKNOWLEDGEMENT),
        ] + tail

        agent_logger.log_context_update(
            session_id=session_id,
            context_type="history",
            action="trimmed",
            details={"before": len(cleaned), "after": len(trimmed)}
        )
        return trimmed

    def compact(self, messages: List[Message], session_id: Optional[str] = None) -> List[Message]:
        """Summarize every tool round except the newest one"""

        round_indices = [i for i, m in enumerate(messages) if m.is_tool_result_round]
        if len(round_indices) < 2:
            return messages

        compacted = list(messages)
        for msg_index in round_indices[:-1]:
            results = compacted[msg_index].content
            compacted[msg_index] = compacted[msg_index].model_copy(update={
                "content": [
                    ToolResultBlock(tool_use_id=block.tool_use_id, content=summarize_tool_result(block.content))
                    if isinstance(block, ToolResultBlock) else block
                    for block in results
                ]
            })

            assistant_index = msg_index - 1
            if assistant_index < 0:
                continue
            assistant = compacted[assistant_index]
            if assistant.role != "assistant" or not isinstance(assistant.content, list):
                continue
            compacted[assistant_index] = assistant.model_copy(update={
                "content": [
                    block.model_copy(update={"input": {}}) if isinstance(block, ToolUseBlock) else block
                    for block in assistant.content
                ]
            })

        logger.debug("Compacted tool rounds", rounds=len(round_indices) - 1, session_id=session_id)
        return compacted
