from typing import List, Optional, Any, Tuple
from pydantic import TypeAdapter, ValidationError
import traceback
import uuid
import structlog

from dynamics_agent.application.schema.events import ChatRequest
from dynamics_agent.domain.context.context_manager import ContextManager
from dynamics_agent.domain.models.conversation import Message, Restriction
from dynamics_agent.domain.orchestration.core.main_agent import LoopController, LoopOutcome
from dynamics_agent.domain.orchestration.prompts import build_system_prompt
from dynamics_agent.domain.streaming.streaming_handler import StreamingHandler
from dynamics_agent.domain.tool.export import ExportService
from dynamics_agent.domain.tool.tool_executor import ToolDispatcher
from dynamics_agent.domain.tool.tool_registry import ToolRegistry
from dynamics_agent.domain.tool.tool_validator import RestrictionFilter
from dynamics_agent.infrastructure.config import Settings, get_settings
from dynamics_agent.infrastructure.observability.langfuse_tracing import create_tracer
from dynamics_agent.infrastructure.observability.logging import metrics
from dynamics_agent.infrastructure.persistence.access_store import AccessStore, DEFAULT_ROLE
from dynamics_agent.infrastructure.persistence.audit_log import AuditLogger, UsageLogEntry
from dynamics_agent.infrastructure.persistence.export_writer import ExportWriter

logger = structlog.get_logger(__name__)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred"

_messages_adapter = TypeAdapter(List[Message])


class ChatService:
    """Handles one chat request end to end and always closes the event stream"""

    def __init__(
        self,
        model_client,
        crm,
        access_store: AccessStore,
        audit: AuditLogger,
        export_writer: ExportWriter,
        settings: Optional[Settings] = None,
        registry: Optional[ToolRegistry] = None
    ):
        self.settings = settings or get_settings()
        self.model_client = model_client
        self.crm = crm
        self.access_store = access_store
        self.audit = audit
        self.export_writer = export_writer
        self.registry = registry or ToolRegistry()
        self.context_manager = ContextManager(self.settings)

    def validate_messages(self, raw_messages: List[Any]) -> List[Message]:
        if not raw_messages:
            raise ValueError("At least one message is required")
        messages = _messages_adapter.validate_python(raw_messages)
        if messages[-1].role != "user":
            raise ValueError("The last message must come from the user")
        return messages

    async def load_access(self, user_id: Optional[str]) -> Tuple[str, List[Restriction]]:
        """Role and restrictions for this request; lookup failures fall back to read-only"""

        try:
            role = await self.access_store.get_user_role(user_id)
        except Exception as e:
            logger.warning("Role lookup failed, using default role", user_id=user_id, error=str(e))
            role = DEFAULT_ROLE
        try:
            restrictions = await self.access_store.get_active_restrictions()
        except Exception as e:
            logger.warning("Restriction lookup failed, continuing without restrictions", error=str(e))
            restrictions = []
        return role or DEFAULT_ROLE, restrictions

    def build_controller(
        self,
        sink: StreamingHandler,
        role: str,
        restrictions: List[Restriction],
        session_id: str,
        user_id: Optional[str]
    ) -> LoopController:
        restriction_filter = RestrictionFilter(restrictions)
        dispatcher = ToolDispatcher(
            self.crm,
            export_service=ExportService(self.crm, self.export_writer, self.model_client, self.settings),
            sink=sink,
            excluded_search_tables=restriction_filter.blocked_tables()
        )
        return LoopController(
            model_client=self.model_client,
            dispatcher=dispatcher,
            sink=sink,
            system_prompt=build_system_prompt(role, restrictions),
            restriction_filter=restriction_filter,
            registry=self.registry,
            context_manager=self.context_manager,
            audit=self.audit,
            tracer=create_tracer(self.settings, session_id, user_id),
            settings=self.settings,
            session_id=session_id,
            user_id=user_id
        )

    async def handle(self, request: ChatRequest, sink: StreamingHandler, user_id: Optional[str] = None) -> Optional[LoopOutcome]:
        """Run the chat loop, reporting failures as a terminal error event"""

        session_id = request.session_id or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(session_id=session_id, user_id=user_id)
        try:
            try:
                history = self.validate_messages(request.messages)
            except (ValueError, ValidationError) as e:
                message = e.errors()[0]["msg"] if isinstance(e, ValidationError) else str(e)
                logger.info("Rejected chat request", reason=message)
                sink.error(f"Invalid messages: {message}" if isinstance(e, ValidationError) else message)
                return None

            role, restrictions = await self.load_access(user_id)
            controller = self.build_controller(sink, role, restrictions, session_id, user_id)
            outcome = await controller.run(history)

            self.audit.record(UsageLogEntry(
                session_id=session_id,
                user_id=user_id,
                model=outcome.models_used[0] if outcome.models_used else self.settings.model,
                input_tokens=outcome.usage.input_tokens,
                output_tokens=outcome.usage.output_tokens,
                rounds=outcome.rounds,
                estimated_cost_usd=outcome.estimated_cost_usd
            ))
            logger.info(
                "Chat request completed",
                rounds=outcome.rounds,
                max_rounds_reached=outcome.max_rounds_reached,
                input_tokens=outcome.usage.input_tokens,
                output_tokens=outcome.usage.output_tokens
            )
            return outcome
        except Exception as e:
            logger.error("Chat request failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            metrics.increment_counter("chat.errors", tags={"type": type(e).__name__})
            if self.settings.is_production:
                message = GENERIC_ERROR_MESSAGE
                details = None
            else:
                message = str(e) or GENERIC_ERROR_MESSAGE
                details = traceback.format_exc()
            sink.error(message, details)
            return None
        finally:
            sink.close()
            structlog.contextvars.unbind_contextvars("session_id", "user_id")
