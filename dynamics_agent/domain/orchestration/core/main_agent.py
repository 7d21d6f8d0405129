from typing import TypedDict, List, Dict, Any, Optional, Literal
from langgraph.graph import StateGraph, END
from pydantic import BaseModel, Field
import asyncio
import time
import structlog

from dynamics_agent.application.schema.events import UsageData
from dynamics_agent.domain.context.context_manager import ContextManager
from dynamics_agent.domain.models.conversation import (
    Message, ParsedResponse, RoundState, ToolResultBlock, ToolUseBlock, Usage
)
from dynamics_agent.domain.streaming.stream_parser import parse_stream
from dynamics_agent.domain.streaming.streaming_handler import StreamingHandler
from dynamics_agent.domain.tool.result_shaper import shape
from dynamics_agent.domain.tool.tool_executor import ToolDispatcher
from dynamics_agent.domain.tool.tool_registry import ToolRegistry, thinking_message
from dynamics_agent.domain.tool.tool_validator import RestrictionFilter
from dynamics_agent.infrastructure.config import Settings, get_settings
from dynamics_agent.infrastructure.llm.pricing import estimate_cost_usd
from dynamics_agent.infrastructure.observability.langfuse_tracing import NullTracer
from dynamics_agent.infrastructure.observability.logging import agent_logger, metrics
from dynamics_agent.infrastructure.persistence.audit_log import AuditLogger, QueryLogEntry

logger = structlog.get_logger(__name__)

ANALYZING_MESSAGE = "Analyzing your question..."
ROUND_LIMIT_MESSAGE = "Reached maximum query steps. Please refine your question."


class LoopState(TypedDict):
    """State carried between graph nodes"""
    messages: List[Message]
    round: int
    last_response: Optional[ParsedResponse]
    max_rounds_reached: bool


class LoopOutcome(BaseModel):
    """How a chat request's tool loop ended"""
    rounds: int
    max_rounds_reached: bool = False
    final_text: str = ""
    usage: Usage = Field(default_factory=Usage)
    models_used: List[str] = Field(default_factory=list)
    denied_calls: int = 0
    estimated_cost_usd: Optional[float] = None


def result_record_count(result: Any) -> Optional[int]:
    if not isinstance(result, dict):
        return None
    if result.get("error"):
        return -1
    if isinstance(result.get("records"), list):
        return len(result["records"])
    for key in ("returned", "reportCount", "exported", "count", "recordCount"):
        if isinstance(result.get(key), int):
            return result[key]
    return 0


class LoopController:
    """Runs the model / tool-call loop for one chat request as a LangGraph state machine"""

    def __init__(
        self,
        model_client,
        dispatcher: ToolDispatcher,
        sink: StreamingHandler,
        system_prompt: str,
        restriction_filter: Optional[RestrictionFilter] = None,
        registry: Optional[ToolRegistry] = None,
        context_manager: Optional[ContextManager] = None,
        audit: Optional[AuditLogger] = None,
        tracer: Optional[NullTracer] = None,
        settings: Optional[Settings] = None,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None
    ):
        self.settings = settings or get_settings()
        self.model_client = model_client
        self.dispatcher = dispatcher
        self.sink = sink
        self.system_prompt = system_prompt
        self.restriction_filter = restriction_filter or RestrictionFilter([])
        self.registry = registry or ToolRegistry()
        self.context_manager = context_manager or ContextManager(self.settings)
        self.audit = audit or AuditLogger()
        self.tracer = tracer or NullTracer()
        self.session_id = session_id
        self.user_id = user_id
        self.max_rounds = self.settings.max_tool_rounds
        self.round_state = RoundState()
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Build the loop graph"""

        workflow = StateGraph(LoopState)

        workflow.add_node("call_model", self.call_model_node)
        workflow.add_node("execute_tools", self.execute_tools_node)
        workflow.add_node("compact", self.compact_node)
        workflow.add_node("finalize", self.finalize_node)
        workflow.add_node("round_limit", self.round_limit_node)

        workflow.set_entry_point("call_model")

        workflow.add_conditional_edges(
            "call_model",
            self.route_after_model,
            {
                "tools": "execute_tools",
                "final": "finalize"
            }
        )
        workflow.add_edge("execute_tools", "compact")
        workflow.add_conditional_edges(
            "compact",
            self.route_after_round,
            {
                "continue": "call_model",
                "limit": "round_limit"
            }
        )
        workflow.add_edge("finalize", END)
        workflow.add_edge("round_limit", END)

        return workflow.compile()

    async def call_model_node(self, state: LoopState) -> Dict[str, Any]:
        """Stream one model response, forwarding answer text live"""

        round_index = state["round"] + 1
        parsed = await parse_stream(
            self.model_client.stream_message(
                self.system_prompt,
                [m.to_wire() for m in state["messages"]],
                self.registry.get_tool_schemas()
            ),
            on_text=self.sink.text_delta
        )

        self.round_state.round = round_index
        self.round_state.record_response(parsed)
        metrics.increment_counter("loop.rounds")
        agent_logger.log_round(
            session_id=self.session_id,
            round_index=round_index,
            model=parsed.model_used,
            tool_calls=len(parsed.tool_calls),
            input_tokens=parsed.usage.input_tokens,
            output_tokens=parsed.usage.output_tokens
        )
        self.tracer.model_round(
            round_index,
            parsed.model_used,
            parsed.usage.input_tokens,
            parsed.usage.output_tokens,
            stop_reason=parsed.stop_reason,
            tool_calls=len(parsed.tool_calls)
        )
        return {"round": round_index, "last_response": parsed}

    def route_after_model(self, state: LoopState) -> Literal["tools", "final"]:
        parsed = state["last_response"]
        return "tools" if parsed is not None and parsed.tool_calls else "final"

    async def execute_tools_node(self, state: LoopState) -> Dict[str, Any]:
        """Run every tool call of the round concurrently and append the results"""

        parsed = state["last_response"]
        calls = parsed.tool_calls
        outcomes = await asyncio.gather(
            *(self._run_tool_call(call, state["round"]) for call in calls),
            return_exceptions=True
        )

        results: Dict[str, ToolResultBlock] = {}
        for call, outcome in zip(calls, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Tool call crashed", tool_name=call.name, error=str(outcome))
                outcome = ToolResultBlock(tool_use_id=call.id, content=shape({"error": str(outcome)}, 1000))
            results[call.id] = outcome

        messages = list(state["messages"]) + [
            parsed.to_message(),
            Message(role="user", content=[results[call.id] for call in calls]),
        ]
        return {"messages": messages}

    async def compact_node(self, state: LoopState) -> Dict[str, Any]:
        return {"messages": self.context_manager.compact(state["messages"], session_id=self.session_id)}

    def route_after_round(self, state: LoopState) -> Literal["continue", "limit"]:
        return "limit" if state["round"] >= self.max_rounds else "continue"

    async def finalize_node(self, state: LoopState) -> Dict[str, Any]:
        """Deliver the final answer unless it already went out live"""

        parsed = state["last_response"]
        if parsed is not None and not parsed.text_was_streamed_live:
            self.sink.response(parsed.text)
        self.sink.complete(state["round"], False, self._usage_data())
        return {"max_rounds_reached": False}

    async def round_limit_node(self, state: LoopState) -> Dict[str, Any]:
        logger.warning("Round limit reached without a final answer", session_id=self.session_id, rounds=state["round"])
        metrics.increment_counter("loop.round_limit")
        self.round_state.max_rounds_reached = True
        self.sink.response(ROUND_LIMIT_MESSAGE)
        self.sink.complete(state["round"], True, self._usage_data())
        return {"max_rounds_reached": True}

    async def _run_tool_call(self, call: ToolUseBlock, round_index: int) -> ToolResultBlock:
        """Restriction check, dispatch, redaction and shaping for one call"""

        denial = self.restriction_filter.check(call.name, call.input)
        if denial:
            logger.info("Tool call denied", tool_name=call.name, reason=denial, session_id=self.session_id)
            metrics.increment_counter("tool.denied", tags={"tool": call.name})
            self.round_state.denied_calls += 1
            self.sink.send_thinking(f"Blocked: {denial}")
            self.audit.record(self._audit_entry(call, None, 0.0, denied=True, error=denial))
            return ToolResultBlock(tool_use_id=call.id, content=f"DENIED: {denial}")

        self.sink.send_thinking(thinking_message(call.name, call.input))
        started = time.monotonic()
        error = None
        try:
            raw = await self.dispatcher.execute(call.name, call.input)
            raw = self.restriction_filter.redact(call.name, call.input, raw)
        except Exception as e:
            # Tool failures go back to the model as data
            logger.warning("Tool call failed", tool_name=call.name, round=round_index, error=str(e)[:200])
            raw = {"error": str(e)}
            error = str(e)
        duration_ms = (time.monotonic() - started) * 1000

        if error is None and isinstance(raw, dict) and raw.get("error"):
            error = str(raw["error"])

        budget = self.registry.result_budget(
            call.name, self.settings.result_char_budget, self.settings.large_result_char_budget
        )
        content = shape(raw, budget)
        record_count = result_record_count(raw)

        metrics.record_latency(f"tool.{call.name}", duration_ms)
        agent_logger.log_tool_execution(
            tool_name=call.name,
            session_id=self.session_id,
            round_index=round_index,
            input_data=call.input,
            record_count=record_count,
            duration_ms=round(duration_ms, 1),
            success=error is None,
            error=error
        )
        self.audit.record(self._audit_entry(call, record_count, duration_ms, error=error))
        self.tracer.tool_call(call.name, call.input, content, duration_ms, error=error)
        return ToolResultBlock(tool_use_id=call.id, content=content)

    def _audit_entry(
        self,
        call: ToolUseBlock,
        record_count: Optional[int],
        duration_ms: float,
        denied: bool = False,
        error: Optional[str] = None
    ) -> QueryLogEntry:
        return QueryLogEntry(
            session_id=self.session_id,
            user_id=self.user_id,
            tool_name=call.name,
            table_name=call.input.get("table_name") or call.input.get("type") or call.input.get("target_type"),
            parameters=call.input,
            record_count=record_count,
            execution_time_ms=round(duration_ms, 1),
            denied=denied,
            error=error
        )

    def _estimated_cost(self) -> Optional[float]:
        usage = self.round_state.usage
        model = self.round_state.models_used[0] if self.round_state.models_used else self.settings.model
        return estimate_cost_usd(model, usage.input_tokens, usage.output_tokens)

    def _usage_data(self) -> UsageData:
        usage = self.round_state.usage
        cost = self._estimated_cost()
        return UsageData(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            estimated_cost_usd=round(cost, 6) if cost is not None else None
        )

    async def run(self, history: List[Message]) -> LoopOutcome:
        """Run the loop over a client-supplied history"""

        self.sink.send_thinking(ANALYZING_MESSAGE)
        initial_state: LoopState = {
            "messages": self.context_manager.trim(history, session_id=self.session_id),
            "round": 0,
            "last_response": None,
            "max_rounds_reached": False,
        }
        try:
            final_state = await self.workflow.ainvoke(
                initial_state,
                config={"recursion_limit": self.max_rounds * 3 + 5}
            )
        except Exception as e:
            self.tracer.finish(self.round_state.round, error=str(e))
            raise

        parsed = final_state.get("last_response")
        outcome = LoopOutcome(
            rounds=final_state["round"],
            max_rounds_reached=final_state["max_rounds_reached"],
            final_text=ROUND_LIMIT_MESSAGE if final_state["max_rounds_reached"] else (parsed.text if parsed else ""),
            usage=self.round_state.usage,
            models_used=self.round_state.models_used,
            denied_calls=self.round_state.denied_calls,
            estimated_cost_usd=self._estimated_cost()
        )
        self.tracer.finish(outcome.rounds, outcome.max_rounds_reached)
        return outcome
