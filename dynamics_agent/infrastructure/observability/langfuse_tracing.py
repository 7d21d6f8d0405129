from typing import Dict, Any, Optional
from langfuse import Langfuse
import structlog

from dynamics_agent.infrastructure.config import Settings, get_settings

logger = structlog.get_logger(__name__)

_client: Optional[Langfuse] = None


def get_langfuse(settings: Settings) -> Langfuse:
    """Process-wide Langfuse client"""

    global _client
    if _client is None:
        _client = Langfuse(
            public_key=settings.langfuse_public_key,
            secret_key=settings.langfuse_secret_key,
            host=settings.langfuse_host
        )
    return _client


class NullTracer:
    """Tracer used when Langfuse is not configured"""

    def model_round(self, round_index: int, model: Optional[str], input_tokens: int, output_tokens: int,
                    stop_reason: Optional[str] = None, tool_calls: int = 0):
        pass

    def tool_call(self, tool_name: str, tool_input: Dict[str, Any], output: str,
                  duration_ms: float, error: Optional[str] = None):
        pass

    def finish(self, rounds: int, max_rounds_reached: bool = False, error: Optional[str] = None):
        pass


class LoopTracer(NullTracer):
    """One Langfuse trace per chat request, with a generation per round and a span per tool call"""

    def __init__(self, langfuse: Langfuse, session_id: Optional[str], user_id: Optional[str]):
        self.langfuse = langfuse
        self.trace = None
        try:
            self.trace = langfuse.trace(
                name="dynamics_explorer_chat",
                session_id=session_id,
                user_id=user_id
            )
        except Exception as e:
            logger.warning("Langfuse trace creation failed", error=str(e))

    def model_round(self, round_index: int, model: Optional[str], input_tokens: int, output_tokens: int,
                    stop_reason: Optional[str] = None, tool_calls: int = 0):
        if self.trace is None:
            return
        try:
            self.trace.generation(
                name=f"round_{round_index}",
                model=model,
                usage={"input": input_tokens, "output": output_tokens},
                metadata={"stop_reason": stop_reason, "tool_calls": tool_calls}
            )
        except Exception as e:
            logger.warning("Langfuse generation failed", error=str(e))

    def tool_call(self, tool_name: str, tool_input: Dict[str, Any], output: str,
                  duration_ms: float, error: Optional[str] = None):
        if self.trace is None:
            return
        try:
            span = self.trace.span(name=f"tool:{tool_name}", input=tool_input)
            span.end(
                output=output[:2000],
                level="ERROR" if error else "DEFAULT",
                status_message=error,
                metadata={"duration_ms": duration_ms}
            )
        except Exception as e:
            logger.warning("Langfuse span failed", tool_name=tool_name, error=str(e))

    def finish(self, rounds: int, max_rounds_reached: bool = False, error: Optional[str] = None):
        if self.trace is None:
            return
        try:
            self.trace.update(
                output={"rounds": rounds, "maxRoundsReached": max_rounds_reached, "error": error}
            )
            self.langfuse.flush()
        except Exception as e:
            logger.warning("Langfuse flush failed", error=str(e))


def create_tracer(
    settings: Optional[Settings] = None,
    session_id: Optional[str] = None,
    user_id: Optional[str] = None
) -> NullTracer:
    settings = settings or get_settings()
    if not settings.tracing_enabled:
        return NullTracer()
    return LoopTracer(get_langfuse(settings), session_id, user_id)
