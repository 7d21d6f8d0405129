from typing import Dict, Any, Optional, Set, Callable, Awaitable
import structlog

from dynamics_agent.domain.errors import ToolInputError, UnknownToolError
from dynamics_agent.domain.models.conversation import RelationshipQuery, ToolName
from dynamics_agent.domain.tool.composite import find_reports_due, search_records
from dynamics_agent.domain.tool.entity_resolver import EntityResolver
from dynamics_agent.domain.tool.export import ExportService, sanitize_select
from dynamics_agent.domain.tool.relationships import RelationshipEngine
from dynamics_agent.domain.tool.result_shaper import strip_empty
from dynamics_agent.domain.tool.schema_annotations import describe_table

logger = structlog.get_logger(__name__)

DEFAULT_QUERY_TOP = 50

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


def _require(tool_input: Dict[str, Any], *names: str):
    missing = [name for name in names if not tool_input.get(name)]
    if missing:
        raise ToolInputError(f"Missing required parameter: {', '.join(missing)}")


class ToolDispatcher:
    """Routes a tool call to its handler for one chat request"""

    def __init__(
        self,
        crm,
        export_service: Optional[ExportService] = None,
        sink=None,
        excluded_search_tables: Optional[Set[str]] = None
    ):
        self.crm = crm
        self.export_service = export_service
        self.sink = sink
        self.excluded_search_tables = set(excluded_search_tables or ())
        self.resolver = EntityResolver(crm)
        self.relationships = RelationshipEngine(crm, self.resolver)
        self.handlers: Dict[ToolName, ToolHandler] = {
            ToolName.SEARCH: self._search,
            ToolName.GET_ENTITY: self._get_entity,
            ToolName.GET_RELATED: self._get_related,
            ToolName.DESCRIBE_TABLE: self._describe_table,
            ToolName.QUERY_RECORDS: self._query_records,
            ToolName.COUNT_RECORDS: self._count_records,
            ToolName.FIND_REPORTS_DUE: self._find_reports_due,
            ToolName.EXPORT_CSV: self._export_csv,
        }

    async def execute(self, tool_name: str, tool_input: Dict[str, Any]) -> Any:
        """Run one tool call; raises on invalid input or CRM failure"""

        try:
            tool = ToolName(tool_name)
        except ValueError:
            raise UnknownToolError(tool_name)
        return await self.handlers[tool](tool_input or {})

    async def _search(self, tool_input: Dict[str, Any]) -> Dict[str, Any]:
        _require(tool_input, "search")
        return await search_records(
            self.crm,
            tool_input["search"],
            entities=tool_input.get("entities"),
            top=tool_input.get("top"),
            excluded_tables=self.excluded_search_tables
        )

    async def _get_entity(self, tool_input: Dict[str, Any]) -> Dict[str, Any]:
        _require(tool_input, "type", "identifier")
        return await self.resolver.get_entity(tool_input["type"], str(tool_input["identifier"]))

    async def _get_related(self, tool_input: Dict[str, Any]) -> Dict[str, Any]:
        _require(tool_input, "source_type", "target_type")
        query = RelationshipQuery(
            source_type=tool_input["source_type"],
            target_type=tool_input["target_type"],
            source_id=tool_input.get("source_id"),
            source_name=tool_input.get("source_name"),
            date_from=tool_input.get("date_from"),
            date_to=tool_input.get("date_to")
        )
        return await self.relationships.get_related(query)

    async def _describe_table(self, tool_input: Dict[str, Any]) -> Dict[str, Any]:
        return describe_table(tool_input.get("table_name"))

    async def _query_records(self, tool_input: Dict[str, Any]) -> Dict[str, Any]:
        _require(tool_input, "table_name")
        entity_set = await self.crm.resolve_entity_set(tool_input["table_name"])
        select = sanitize_select(tool_input.get("select"))
        result = await self.crm.query_records(
            entity_set,
            select=",".join(select) or None,
            filter=tool_input.get("filter"),
            orderby=tool_input.get("orderby"),
            top=tool_input.get("top") or DEFAULT_QUERY_TOP,
            expand=tool_input.get("expand")
        )
        result["records"] = [strip_empty(r) for r in result["records"]]
        return result

    async def _count_records(self, tool_input: Dict[str, Any]) -> Dict[str, Any]:
        _require(tool_input, "table_name")
        entity_set = await self.crm.resolve_entity_set(tool_input["table_name"])
        return {"count": await self.crm.count_records(entity_set, filter=tool_input.get("filter"))}

    async def _find_reports_due(self, tool_input: Dict[str, Any]) -> Dict[str, Any]:
        _require(tool_input, "date_from", "date_to")
        return await find_reports_due(self.crm, tool_input["date_from"], tool_input["date_to"])

    async def _export_csv(self, tool_input: Dict[str, Any]) -> Dict[str, Any]:
        _require(tool_input, "table_name")
        if self.export_service is None:
            raise ToolInputError("Export is not available")
        entity_set = await self.crm.resolve_entity_set(tool_input["table_name"])
        return await self.export_service.export(tool_input, entity_set, sink=self.sink)
