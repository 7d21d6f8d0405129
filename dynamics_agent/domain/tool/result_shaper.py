from typing import Dict, Any, List, Optional
import json
import re

ZERO_GUID = re.compile(r"^0{8}-0{4}-0{4}-0{4}-0{12}$")
TRUNCATION_MARKER = "... [truncated]"
METADATA_RESERVE = 300


def dumps(value: Any) -> str:
    """Compact JSON used for every tool result"""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def _is_empty(value: Any) -> bool:
    if value is None or value == "" or value is False:
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value == 0:
        return True
    return isinstance(value, str) and bool(ZERO_GUID.match(value))


def strip_empty(record: Any) -> Any:
    """Drop OData metadata keys and empty-like values from a record"""

    if not isinstance(record, dict):
        return record
    return {
        key: value for key, value in record.items()
        if not key.startswith("@") and "odata" not in key and not _is_empty(value)
    }


def strip_payload(result: Any) -> Any:
    if not isinstance(result, dict):
        return result
    payload = dict(result)
    if isinstance(payload.get("records"), list):
        payload["records"] = [strip_empty(r) for r in payload["records"]]
    if isinstance(payload.get("record"), dict):
        payload["record"] = strip_empty(payload["record"])
    return payload


def truncate_text(text: str, budget: int) -> str:
    """Flat truncation that keeps the marker inside the budget"""

    if len(text) <= budget:
        return text
    if budget <= len(TRUNCATION_MARKER):
        return text[:budget]
    return text[:budget - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def _truncate_records(payload: Dict[str, Any], records: List[Any], serialized: str, budget: int) -> Optional[str]:
    returned = len(records)
    total_count = payload.get("totalCount")
    total = total_count if isinstance(total_count, int) and total_count >= returned else returned

    metadata = {
        key: value for key, value in payload.items()
        if key not in ("records", "count", "note") and not isinstance(value, (dict, list))
    }

    avg_chars = len(serialized) / returned
    keep = max(0, min(returned, int((budget - METADATA_RESERVE) / avg_chars)))

    while True:
        shaped = dict(metadata)
        shaped.update({
            "records": records[:keep],
            "count": keep,
            "shown": keep,
            "total": total,
            "truncated": True,
            "note": (
                f"Showing {keep} of {total} total. Present the total to the user; "
                "narrow the filter or select fewer fields to see the rest."
            ),
        })
        out = dumps(shaped)
        if len(out) <= budget:
            return out
        if keep == 0:
            if metadata:
                # Oversized scalar metadata; retry with the record accounting only
                metadata = {}
                continue
            return None
        keep = max(0, min(keep - 1, int(keep * budget / len(out))))


def shape(result: Any, budget: int) -> str:
    """Serialize a tool result so it fits in ``budget`` characters"""

    if isinstance(result, str):
        return truncate_text(result, budget)

    payload = strip_payload(result)
    serialized = dumps(payload)
    if len(serialized) <= budget:
        return serialized

    records = payload.get("records") if isinstance(payload, dict) else None
    if isinstance(records, list) and records:
        shaped = _truncate_records(payload, records, serialized, budget)
        if shaped is not None:
            return shaped

    return truncate_text(serialized, budget)
