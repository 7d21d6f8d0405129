from typing import Dict, Any, List, Optional, Set
import re
import structlog

from dynamics_agent.domain.errors import ToolInputError
from dynamics_agent.domain.tool.relationships import DATE_PATTERN

logger = structlog.get_logger(__name__)

REPORTS_SELECT = (
    "akoya_paymentnum,akoya_requirementdue,akoya_requirementtype,wmkf_reporttype,"
    "_akoya_requestlookup_value,_akoya_requestapplicant_value,statecode"
)
REPORTS_HEADER = "Report# | Due | Type | Request# | Organization | Status"
DEFAULT_SEARCH_TOP = 20
HIGHLIGHT_CHARS = 200
HIT_TAG = re.compile(r"\{/?crmhit\}")


def _formatted(record: Dict[str, Any], field: str) -> Optional[Any]:
    return record.get(f"{field}_formatted") or record.get(field)


async def find_reports_due(crm, date_from: str, date_to: str) -> Dict[str, Any]:
    """Reporting requirements due in [date_from, date_to), one line per report"""

    for value in (date_from, date_to):
        if not value or not DATE_PATTERN.match(value):
            raise ToolInputError(f'Invalid date "{value}". Use ISO format, e.g. 2026-02-01T00:00:00Z')

    result = await crm.query_records(
        "akoya_requestpayments",
        select=REPORTS_SELECT,
        filter=(
            f"akoya_type eq true and akoya_requirementdue ge {date_from} "
            f"and akoya_requirementdue lt {date_to}"
        ),
        orderby="akoya_requirementdue asc",
        top=100
    )
    records = result.get("records") or []
    if not records:
        return {
            "reportCount": 0,
            "totalCount": result.get("totalCount", 0),
            "message": "No reports due in this date range.",
        }

    by_date: Dict[str, int] = {}
    lines = []
    for r in records:
        due = _formatted(r, "akoya_requirementdue") or "?"
        report_type = r.get("akoya_requirementtype_formatted") or "?"
        detail = r.get("wmkf_reporttype_formatted") or ""
        by_date[due] = by_date.get(due, 0) + 1
        lines.append(" | ".join([
            str(r.get("akoya_paymentnum") or "?"),
            str(due),
            f"{report_type} - {detail}" if detail else report_type,
            f"Req {_formatted(r, '_akoya_requestlookup_value') or '?'}",
            r.get("_akoya_requestapplicant_value_formatted") or "?",
            r.get("statecode_formatted") or "",
        ]))

    total = result.get("totalCount", len(records))
    return {
        "totalCount": total,
        "reportCount": len(records),
        "hasMore": total > len(records),
        "byDate": ", ".join(f"{date}: {count}" for date, count in by_date.items()),
        "header": REPORTS_HEADER,
        "reports": "\n".join(lines),
    }


def _hit_label(entity: str, attributes: Dict[str, Any], object_id: str) -> str:
    a = attributes
    if entity == "akoya_request":
        return f"Req {a.get('akoya_requestnum') or '?'} | {a.get('akoya_applicantidname') or '?'} | {(a.get('akoya_title') or '')[:80]}"
    if entity == "contact":
        return f"{a.get('fullname') or '?'} | {a.get('jobtitle') or ''} | {a.get('emailaddress1') or ''}"
    if entity == "account":
        return f"{a.get('name') or '?'} | {a.get('address1_city') or ''}, {a.get('address1_stateorprovince') or ''}"
    if entity == "annotation":
        return f"Note: {(a.get('subject') or a.get('notetext') or '')[:80]}"
    if entity == "email":
        return f"Email: {(a.get('subject') or '')[:80]} | {a.get('createdon') or ''}"
    return str(a.get("wmkf_name") or a.get("akoya_title") or object_id)


def _highlight_lines(highlights: Dict[str, Any]) -> List[str]:
    lines = []
    for field, values in highlights.items():
        values = values if isinstance(values, list) else [values]
        if not values:
            continue
        lines.append(f"{field}: {HIT_TAG.sub('**', str(values[0]))[:HIGHLIGHT_CHARS]}")
    return lines


async def search_records(
    crm,
    search: str,
    entities: Optional[List[str]] = None,
    top: Optional[int] = None,
    excluded_tables: Optional[Set[str]] = None
) -> Dict[str, Any]:
    """Full-text search grouped by table, with hit markers rendered as bold"""

    if not search or not str(search).strip():
        raise ToolInputError("search is required")

    result = await crm.search(search, entities=entities or None, top=top or DEFAULT_SEARCH_TOP)
    query_context = result.get("queryContext") or {}
    altered = query_context.get("alteredquery") if isinstance(query_context, dict) else None

    hits = result.get("results") or []
    excluded = excluded_tables or set()
    skipped = [h for h in hits if h.get("entity") in excluded]
    if skipped:
        logger.info("Dropped search hits from restricted tables", count=len(skipped))
        hits = [h for h in hits if h.get("entity") not in excluded]

    if not hits:
        return {"totalCount": 0, "query": altered or search, "message": "No results found."}

    by_entity: Dict[str, List[Dict[str, Any]]] = {}
    for hit in hits:
        by_entity.setdefault(hit.get("entity") or "unknown", []).append(hit)

    sections = []
    for entity, entity_hits in by_entity.items():
        lines = []
        for hit in entity_hits:
            object_id = hit.get("objectId") or ""
            parts = [_hit_label(entity, hit.get("attributes") or {}, object_id), f"ID: {object_id}"]
            parts.extend(_highlight_lines(hit.get("highlights") or {}))
            lines.append("\n  ".join(parts))
        sections.append(f"[{entity}] ({len(entity_hits)} results)\n" + "\n".join(lines))

    return {
        "totalCount": result.get("totalCount", len(hits)) - len(skipped),
        "query": altered or search,
        "results": "\n\n".join(sections),
    }
