from typing import Dict, List, Any, Optional

from dynamics_agent.domain.models.conversation import ToolName

ENTITY_TYPES = ["account", "request", "contact", "reviewer", "email", "payment", "staff"]
RELATED_SOURCE_TYPES = ["account", "request", "contact", "reviewer"]
RELATED_TARGET_TYPES = ["requests", "payments", "reports", "emails", "annotations", "reviewers"]

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": ToolName.SEARCH.value,
        "description": "Full-text search across all indexed tables (requests, contacts, accounts, notes, etc.). Searches titles, abstracts, names and other text fields with relevance ranking. Use for keyword/topic searches. Returns matched records with highlighted text.",
        "input_schema": {
            "type": "object",
            "properties": {
                "search": {"type": "string", "description": "Search term(s). Supports stemming and fuzzy matching."},
                "entities": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Optional: limit to specific tables (e.g. [\"akoya_request\",\"contact\"])",
                },
                "top": {"type": "integer", "description": "1-100, default 20"},
            },
            "required": ["search"],
        },
    },
    {
        "name": ToolName.GET_ENTITY.value,
        "description": "Find one entity by name, number, or GUID. Returns full details with resolved lookup display names.",
        "input_schema": {
            "type": "object",
            "properties": {
                "type": {
                    "type": "string",
                    "enum": ENTITY_TYPES,
                    "description": "Entity type to look up. Use \"staff\" for foundation staff / system users.",
                },
                "identifier": {"type": "string", "description": "Name, number, or GUID"},
            },
            "required": ["type", "identifier"],
        },
    },
    {
        "name": ToolName.GET_RELATED.value,
        "description": "Follow relationships from a source entity. Handles multi-step lookups server-side. Paths: account->requests/emails/payments/reports, request->payments/reports/emails/annotations/reviewers, contact->requests, reviewer->requests. Use for ANY \"show me X for Y\" query.",
        "input_schema": {
            "type": "object",
            "properties": {
                "source_type": {"type": "string", "enum": RELATED_SOURCE_TYPES, "description": "Source entity type"},
                "source_id": {"type": "string", "description": "GUID from a previous result"},
                "source_name": {"type": "string", "description": "Name or number (alternative to source_id; the tool resolves it)"},
                "target_type": {"type": "string", "enum": RELATED_TARGET_TYPES, "description": "Related entity type to retrieve"},
                "date_from": {"type": "string", "description": "Optional ISO date filter start (e.g. 2025-01-01T00:00:00Z)"},
                "date_to": {"type": "string", "description": "Optional ISO date filter end"},
            },
            "required": ["source_type", "target_type"],
        },
    },
    {
        "name": ToolName.DESCRIBE_TABLE.value,
        "description": "Get field names, types, meanings, and OData rules for a table. Call BEFORE constructing query_records filters. If the table name is unknown, returns the list of available tables.",
        "input_schema": {
            "type": "object",
            "properties": {
                "table_name": {"type": "string", "description": "Table to describe (e.g. \"akoya_request\")"},
            },
            "required": [],
        },
    },
    {
        "name": ToolName.QUERY_RECORDS.value,
        "description": "OData query. Null fields stripped. Use $select with ONLY the fields you need; fewer fields means more records fit.",
        "input_schema": {
            "type": "object",
            "properties": {
                "table_name": {"type": "string"},
                "select": {"type": "string", "description": "Comma-separated fields. Only select fields you will display."},
                "filter": {"type": "string", "description": "OData $filter"},
                "orderby": {"type": "string", "description": "OData $orderby"},
                "top": {"type": "integer", "description": "1-100, default 50"},
                "expand": {"type": "string", "description": "OData $expand"},
            },
            "required": ["table_name"],
        },
    },
    {
        "name": ToolName.COUNT_RECORDS.value,
        "description": "Count records, optionally filtered.",
        "input_schema": {
            "type": "object",
            "properties": {
                "table_name": {"type": "string"},
                "filter": {"type": "string", "description": "OData $filter"},
            },
            "required": ["table_name"],
        },
    },
    {
        "name": ToolName.FIND_REPORTS_DUE.value,
        "description": "Find all reporting requirements due in a date range. Returns report#, due date, type, request#, organization, and status.",
        "input_schema": {
            "type": "object",
            "properties": {
                "date_from": {"type": "string", "description": "Start date (ISO format, e.g. 2026-02-01T00:00:00Z)"},
                "date_to": {"type": "string", "description": "End date exclusive (ISO format)"},
            },
            "required": ["date_from", "date_to"],
        },
    },
    {
        "name": ToolName.EXPORT_CSV.value,
        "description": "Export query results as a downloadable CSV file. Fetches ALL matching records (up to 5000). Requires $filter. Set process_instruction to add model-generated columns: the first call returns an estimate; call again with confirmed: true to run it.",
        "input_schema": {
            "type": "object",
            "properties": {
                "table_name": {"type": "string", "description": "Table to export from (e.g. \"akoya_request\")"},
                "select": {"type": "string", "description": "Comma-separated fields to include as columns"},
                "filter": {"type": "string", "description": "OData $filter (required; no unfiltered dumps)"},
                "orderby": {"type": "string", "description": "OData $orderby"},
                "filename": {"type": "string", "description": "Download filename without extension. Auto-generated if omitted."},
                "process_instruction": {"type": "string", "description": "Task to run per record (e.g. \"extract 5 keywords from the abstract\")"},
                "confirmed": {"type": "boolean", "description": "Set to true after the user approves the processing estimate"},
            },
            "required": ["table_name", "select", "filter"],
        },
    },
]

# Tools whose output is compact prose and gets the larger result budget
LARGE_RESULT_TOOLS = {ToolName.GET_RELATED.value, ToolName.FIND_REPORTS_DUE.value, ToolName.SEARCH.value}


class ToolRegistry:
    """Catalog of tools offered to the model"""

    def __init__(self, definitions: Optional[List[Dict[str, Any]]] = None):
        self.tools: Dict[str, Dict[str, Any]] = {}
        for definition in definitions if definitions is not None else TOOL_DEFINITIONS:
            self.register_tool(definition)

    def register_tool(self, definition: Dict[str, Any]):
        """Register a tool definition; the name must be a known tool"""

        name = ToolName(definition["name"]).value
        self.tools[name] = definition

    def get_tool_schemas(self) -> List[Dict[str, Any]]:
        """Definitions in the provider's tool format"""
        return list(self.tools.values())

    def get_tool_info(self, tool_name: str) -> Optional[Dict[str, Any]]:
        return self.tools.get(tool_name)

    def result_budget(self, tool_name: str, default_budget: int, large_budget: int) -> int:
        return large_budget if tool_name in LARGE_RESULT_TOOLS else default_budget


def thinking_message(tool_name: str, tool_input: Dict[str, Any]) -> str:
    """Progress text shown to the user while a tool runs"""

    table = tool_input.get("table_name")
    if tool_name == ToolName.SEARCH.value:
        return f'Searching for "{tool_input.get("search", "")}"...'
    if tool_name == ToolName.GET_ENTITY.value:
        return f'Looking up {tool_input.get("type", "record")} "{tool_input.get("identifier", "")}"...'
    if tool_name == ToolName.GET_RELATED.value:
        source = tool_input.get("source_name") or tool_input.get("source_id") or tool_input.get("source_type")
        return f"Finding {tool_input.get('target_type', 'related records')} for {source}..."
    if tool_name == ToolName.DESCRIBE_TABLE.value:
        return f"Reading schema for {table or 'all tables'}..."
    if tool_name == ToolName.QUERY_RECORDS.value:
        return f"Querying {table}..."
    if tool_name == ToolName.COUNT_RECORDS.value:
        return f"Counting {table}..."
    if tool_name == ToolName.FIND_REPORTS_DUE.value:
        date_from = (tool_input.get("date_from") or "")[:10]
        return f"Finding reports due{' from ' + date_from if date_from else ''}..."
    if tool_name == ToolName.EXPORT_CSV.value:
        if tool_input.get("process_instruction") and not tool_input.get("confirmed"):
            return f"Estimating processing for {table} export..."
        return f"Exporting {table}..."
    return f"Running {tool_name}..."
