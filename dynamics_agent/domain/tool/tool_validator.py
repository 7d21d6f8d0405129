from typing import Dict, Any, List, Optional, Set
import re
import structlog

from dynamics_agent.domain.models.conversation import Restriction, ToolName
from dynamics_agent.infrastructure.crm.dynamics_client import logical_table_name

logger = structlog.get_logger(__name__)

MASK = "***"

ENTITY_TYPE_TABLES: Dict[str, str] = {
    "account": "account",
    "request": "akoya_request",
    "contact": "contact",
    "reviewer": "wmkf_potentialreviewers",
    "email": "email",
    "payment": "akoya_requestpayment",
    "staff": "systemuser",
}

TARGET_TYPE_TABLES: Dict[str, str] = {
    "requests": "akoya_request",
    "payments": "akoya_requestpayment",
    "reports": "akoya_requestpayment",
    "emails": "email",
    "annotations": "annotation",
    "reviewers": "wmkf_potentialreviewers",
}


def _field_tokens(*expressions: Optional[str]) -> Set[str]:
    tokens: Set[str] = set()
    for expression in expressions:
        if expression:
            tokens.update(re.findall(r"[A-Za-z_][A-Za-z0-9_]*", expression))
    return tokens


class RestrictionFilter:
    """Gates tool calls on restricted tables and fields, and redacts results"""

    def __init__(self, restrictions: List[Restriction]):
        self.restrictions = list(restrictions)

    def blocked_tables(self) -> Set[str]:
        return {r.table_name for r in self.restrictions if not r.field_name}

    def tables_touched(self, tool_name: str, tool_input: Dict[str, Any]) -> List[str]:
        """Logical table names a tool call reads from"""

        if tool_name in (
            ToolName.QUERY_RECORDS.value,
            ToolName.COUNT_RECORDS.value,
            ToolName.DESCRIBE_TABLE.value,
            ToolName.EXPORT_CSV.value,
        ):
            table = tool_input.get("table_name")
            return [logical_table_name(table)] if table else []
        if tool_name == ToolName.GET_ENTITY.value:
            table = ENTITY_TYPE_TABLES.get(tool_input.get("type") or "")
            return [table] if table else []
        if tool_name == ToolName.GET_RELATED.value:
            tables = [
                ENTITY_TYPE_TABLES.get(tool_input.get("source_type") or ""),
                TARGET_TYPE_TABLES.get(tool_input.get("target_type") or ""),
            ]
            return [t for t in tables if t]
        if tool_name == ToolName.SEARCH.value:
            return [logical_table_name(e) for e in tool_input.get("entities") or [] if isinstance(e, str)]
        if tool_name == ToolName.FIND_REPORTS_DUE.value:
            return ["akoya_requestpayment"]
        return []

    def check(self, tool_name: str, tool_input: Dict[str, Any]) -> Optional[str]:
        """Return a denial reason, or None when the call may run"""

        if not self.restrictions:
            return None

        tables = set(self.tables_touched(tool_name, tool_input))
        referenced = _field_tokens(
            tool_input.get("select"), tool_input.get("filter"), tool_input.get("orderby")
        )
        for restriction in self.restrictions:
            if restriction.table_name not in tables:
                continue
            if not restriction.field_name:
                return f'Table "{restriction.table_name}" is restricted'
            if restriction.restriction_type == "block" and restriction.field_name in referenced:
                return f'Field "{restriction.field_name}" is restricted'
        return None

    def redact(self, tool_name: str, tool_input: Dict[str, Any], result: Any) -> Any:
        """Remove blocked fields and mask masked fields in record payloads"""

        tables = set(self.tables_touched(tool_name, tool_input))
        rules = [
            r for r in self.restrictions
            if r.field_name and r.table_name in tables
        ]
        if not rules or not isinstance(result, dict):
            return result

        redacted = dict(result)
        if isinstance(redacted.get("records"), list):
            redacted["records"] = [self._redact_record(record, rules) for record in redacted["records"]]
        if isinstance(redacted.get("record"), dict):
            redacted["record"] = self._redact_record(redacted["record"], rules)
        return redacted

    def _redact_record(self, record: Any, rules: List[Restriction]) -> Any:
        if not isinstance(record, dict):
            return record
        cleaned = dict(record)
        for rule in rules:
            for key in (rule.field_name, f"{rule.field_name}_formatted"):
                if key not in cleaned:
                    continue
                if rule.restriction_type == "mask":
                    cleaned[key] = MASK
                else:
                    del cleaned[key]
        return cleaned
