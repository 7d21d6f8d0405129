from typing import Dict, Any, List, Optional, Tuple
import re
import structlog

from dynamics_agent.domain.errors import ToolInputError
from dynamics_agent.domain.models.conversation import RelationshipQuery
from dynamics_agent.domain.tool.entity_resolver import (
    EntityResolver, get_entity_type, is_guid, record_label
)

logger = structlog.get_logger(__name__)

# source type -> target type -> edge handler
RELATIONSHIPS: Dict[str, Dict[str, str]] = {
    "account": {
        "requests": "_account_requests",
        "emails": "_account_emails",
        "payments": "_account_payments",
        "reports": "_account_reports",
    },
    "request": {
        "payments": "_request_payments",
        "reports": "_request_reports",
        "emails": "_request_emails",
        "annotations": "_request_annotations",
        "reviewers": "_request_reviewers",
    },
    "contact": {
        "requests": "_contact_requests",
    },
    "reviewer": {
        "requests": "_reviewer_requests",
    },
}

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}(T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:\d{2})?)?$")
EDGE_TOP = 100
EMAIL_BODY_CHARS = 800

REQUEST_SELECT = (
    "akoya_requestid,akoya_requestnum,akoya_title,akoya_requeststatus,akoya_submitdate,"
    "akoya_fiscalyear,akoya_request,akoya_grant,_akoya_programid_value,_akoya_applicantid_value"
)
REQUEST_HEADER = "Request# | Status | Submitted | Cycle | Program | Ask | Grant | Title"
PAYMENT_SELECT = (
    "akoya_paymentnum,akoya_amount,akoya_paymentdate,akoya_estimatedgrantpaydate,akoya_folio,"
    "statecode,_akoya_requestlookup_value"
)
PAYMENT_HEADER = "Payment# | Amount | Paid | Estimated | Status | Request#"
REPORT_SELECT = (
    "akoya_paymentnum,akoya_requirementdue,akoya_requirementtype,wmkf_reporttype,statecode,"
    "_akoya_requestlookup_value"
)
REPORT_HEADER = "Report# | Due | Type | Status | Request#"
EMAIL_HEADER = "Direction | Date | Request# | From -> To | Subject"

CONTACT_REQUEST_ROLES = [
    ("_wmkf_projectleader_value", "PI"),
    ("_akoya_primarycontactid_value", "Primary contact"),
] + [(f"_wmkf_copi{i}_value", "Co-PI") for i in range(1, 6)]
REVIEWER_SLOTS = [f"_wmkf_potentialreviewer{i}_value" for i in range(1, 6)]


def _display(record: Dict[str, Any], field: str, default: str = "") -> str:
    value = record.get(f"{field}_formatted", record.get(field))
    return default if value is None or value == "" else str(value)


def _date_clause(field: str, date_from: Optional[str], date_to: Optional[str]) -> str:
    clause = ""
    for value, operator in ((date_from, "ge"), (date_to, "lt")):
        if not value:
            continue
        if not DATE_PATTERN.match(value):
            raise ToolInputError(f'Invalid date "{value}". Use ISO format, e.g. 2025-01-01T00:00:00Z')
        clause += f" and {field} {operator} {value}"
    return clause


def _any_of(field: str, ids: List[str]) -> str:
    return " or ".join(f"{field} eq {record_id}" for record_id in ids)


def _any_of_fields(fields: List[Tuple[str, str]], record_id: str) -> str:
    return " or ".join(f"{field} eq {record_id}" for field, _ in fields)


def _strip_html(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"<[^>]*>", " ", text or "")).strip()


class RelationshipEngine:
    """Follows named edges between CRM entities"""

    def __init__(self, crm, resolver: Optional[EntityResolver] = None):
        self.crm = crm
        self.resolver = resolver or EntityResolver(crm)

    @staticmethod
    def valid_targets(source_type: str) -> List[str]:
        return sorted(RELATIONSHIPS.get(source_type, {}))

    def validate(self, query: RelationshipQuery) -> Optional[str]:
        """Error message for pairs outside the adjacency table"""

        targets = RELATIONSHIPS.get(query.source_type)
        if targets is None:
            return (
                f'Unknown source type "{query.source_type}". '
                f'Valid source types: {", ".join(sorted(RELATIONSHIPS))}'
            )
        if query.target_type not in targets:
            return (
                f'No relationship from {query.source_type} to {query.target_type}. '
                f'Valid targets for {query.source_type}: {", ".join(self.valid_targets(query.source_type))}'
            )
        return None

    async def get_related(self, query: RelationshipQuery) -> Dict[str, Any]:
        error = self.validate(query)
        if error:
            return {"error": error}
        if not query.source_id and not query.source_name:
            return {"error": "Provide source_id or source_name"}

        source_id, source_label, resolution_info = await self._resolve_source(query)
        if source_id is None:
            return {"error": f'No {query.source_type} found matching "{query.source_name or query.source_id}"'}

        handler = getattr(self, RELATIONSHIPS[query.source_type][query.target_type])
        edge = await handler(source_id, query)

        result: Dict[str, Any] = {
            "source": source_label,
            "sourceId": source_id,
            "target": query.target_type,
            "returned": edge["returned"],
            "totalMatched": edge["totalMatched"],
            "hasMore": edge["hasMore"],
        }
        if edge.get("header"):
            result["header"] = edge["header"]
        result["rows"] = edge["rows"] or f"No {query.target_type} found."
        if edge.get("note"):
            result["note"] = edge["note"]
        result.update(resolution_info)

        logger.info(
            "Relationship traversed",
            source_type=query.source_type,
            target_type=query.target_type,
            returned=edge["returned"],
            total=edge["totalMatched"]
        )
        return result

    async def _resolve_source(self, query: RelationshipQuery) -> Tuple[Optional[str], str, Dict[str, Any]]:
        if query.source_id and is_guid(query.source_id):
            source_id = query.source_id.strip("{}")
            return source_id, query.source_name or source_id, {}

        identifier = query.source_name or query.source_id
        entity_type = get_entity_type(query.source_type)
        resolution = await self.resolver.resolve(query.source_type, identifier)
        if not resolution.found:
            return None, identifier, {}

        info: Dict[str, Any] = {}
        if resolution.note:
            info["sourceNote"] = resolution.note
        if resolution.candidates:
            info["sourceCandidates"] = self.resolver.summarize_candidates(entity_type, resolution.candidates)
        return resolution.record.get(entity_type.id_field), record_label(entity_type, resolution.record), info

    async def _query(self, entity_set: str, select: str, filter: str, orderby: str, top: int = EDGE_TOP) -> Dict[str, Any]:
        return await self.crm.query_records(entity_set, select=select, filter=filter, orderby=orderby, top=top)

    def _edge(self, result: Dict[str, Any], header: str, lines: List[str], note: Optional[str] = None) -> Dict[str, Any]:
        returned = len(result.get("records") or [])
        total = result.get("totalCount")
        total = total if isinstance(total, int) else returned
        return {
            "returned": returned,
            "totalMatched": total,
            "hasMore": bool(result.get("hasMore")) or total > returned,
            "header": header,
            "rows": "\n".join(lines),
            "note": note,
        }

    # Request rows

    def _request_line(self, r: Dict[str, Any], role: Optional[str] = None) -> str:
        parts = [
            _display(r, "akoya_requestnum", "?"),
            _display(r, "akoya_requeststatus"),
            _display(r, "akoya_submitdate")[:10],
            _display(r, "akoya_fiscalyear"),
            _display(r, "_akoya_programid_value"),
            _display(r, "akoya_request"),
            _display(r, "akoya_grant"),
            _display(r, "akoya_title")[:80],
        ]
        if role:
            parts.append(role)
        return " | ".join(parts)

    async def _requests_where(
        self,
        filter: str,
        query: RelationshipQuery,
        roles: Optional[List[Tuple[str, str]]] = None,
        person_id: Optional[str] = None
    ) -> Dict[str, Any]:
        filter = f"({filter}){_date_clause('akoya_submitdate', query.date_from, query.date_to)}"
        select = REQUEST_SELECT
        if roles:
            select += "," + ",".join(field for field, _ in roles)
        result = await self._query("akoya_requests", select, filter, "createdon desc")

        lines = []
        for r in result["records"]:
            role = None
            if roles:
                role = ", ".join(sorted({label for field, label in roles if r.get(field) == person_id}))
            lines.append(self._request_line(r, role))
        header = REQUEST_HEADER + (" | Role" if roles else "")
        return self._edge(result, header, lines)

    async def _account_requests(self, source_id: str, query: RelationshipQuery) -> Dict[str, Any]:
        return await self._requests_where(f"_akoya_applicantid_value eq {source_id}", query)

    async def _contact_requests(self, source_id: str, query: RelationshipQuery) -> Dict[str, Any]:
        return await self._requests_where(
            _any_of_fields(CONTACT_REQUEST_ROLES, source_id), query, CONTACT_REQUEST_ROLES, source_id
        )

    async def _reviewer_requests(self, source_id: str, query: RelationshipQuery) -> Dict[str, Any]:
        roles = [(slot, f"Reviewer slot {i}") for i, slot in enumerate(REVIEWER_SLOTS, 1)]
        return await self._requests_where(_any_of_fields(roles, source_id), query, roles, source_id)

    # Payments and reporting requirements share one table

    async def _payments_where(self, filter: str, query: RelationshipQuery) -> Dict[str, Any]:
        filter = f"{filter} and akoya_type eq false{_date_clause('akoya_paymentdate', query.date_from, query.date_to)}"
        result = await self._query("akoya_requestpayments", PAYMENT_SELECT, filter, "akoya_paymentdate desc")
        lines = [
            " | ".join([
                _display(p, "akoya_paymentnum", "?"),
                _display(p, "akoya_amount"),
                _display(p, "akoya_paymentdate")[:10],
                _display(p, "akoya_estimatedgrantpaydate")[:10],
                _display(p, "akoya_folio") or _display(p, "statecode"),
                _display(p, "_akoya_requestlookup_value", "?"),
            ])
            for p in result["records"]
        ]
        return self._edge(result, PAYMENT_HEADER, lines)

    async def _reports_where(self, filter: str, query: RelationshipQuery) -> Dict[str, Any]:
        filter = f"{filter} and akoya_type eq true{_date_clause('akoya_requirementdue', query.date_from, query.date_to)}"
        result = await self._query("akoya_requestpayments", REPORT_SELECT, filter, "akoya_requirementdue asc")
        lines = []
        for r in result["records"]:
            report_type = _display(r, "akoya_requirementtype", "?")
            detail = _display(r, "wmkf_reporttype")
            lines.append(" | ".join([
                _display(r, "akoya_paymentnum", "?"),
                _display(r, "akoya_requirementdue", "?")[:10],
                f"{report_type} - {detail}" if detail else report_type,
                _display(r, "statecode"),
                _display(r, "_akoya_requestlookup_value", "?"),
            ]))
        return self._edge(result, REPORT_HEADER, lines)

    async def _account_payments(self, source_id: str, query: RelationshipQuery) -> Dict[str, Any]:
        return await self._payments_where(f"_akoya_requestapplicant_value eq {source_id}", query)

    async def _account_reports(self, source_id: str, query: RelationshipQuery) -> Dict[str, Any]:
        return await self._reports_where(f"_akoya_requestapplicant_value eq {source_id}", query)

    async def _request_payments(self, source_id: str, query: RelationshipQuery) -> Dict[str, Any]:
        return await self._payments_where(f"_akoya_requestlookup_value eq {source_id}", query)

    async def _request_reports(self, source_id: str, query: RelationshipQuery) -> Dict[str, Any]:
        return await self._reports_where(f"_akoya_requestlookup_value eq {source_id}", query)

    # Emails hang off requests, so an account's emails need the request ids first

    async def _account_emails(self, source_id: str, query: RelationshipQuery) -> Dict[str, Any]:
        requests = await self._query(
            "akoya_requests",
            "akoya_requestid,akoya_requestnum",
            f"_akoya_applicantid_value eq {source_id}",
            "createdon desc"
        )
        request_numbers = {
            r["akoya_requestid"]: r.get("akoya_requestnum", "?")
            for r in requests["records"] if r.get("akoya_requestid")
        }
        if not request_numbers:
            return {
                "returned": 0,
                "totalMatched": 0,
                "hasMore": False,
                "header": EMAIL_HEADER,
                "rows": "",
                "note": "No requests found for this account, so no linked emails.",
            }

        filter = (
            f"({_any_of('_regardingobjectid_value', list(request_numbers))})"
            f"{_date_clause('createdon', query.date_from, query.date_to)}"
        )
        emails = await self._query(
            "emails",
            "subject,sender,torecipients,createdon,directioncode,_regardingobjectid_value",
            filter,
            "createdon desc"
        )
        lines = [
            self._email_line(e, request_numbers.get(e.get("_regardingobjectid_value"), "?"))
            for e in emails["records"]
        ]
        note = None
        if requests.get("hasMore"):
            note = f"Only emails for the {len(request_numbers)} most recent requests were searched."
        return self._edge(emails, EMAIL_HEADER, lines, note)

    async def _request_emails(self, source_id: str, query: RelationshipQuery) -> Dict[str, Any]:
        filter = f"_regardingobjectid_value eq {source_id}{_date_clause('createdon', query.date_from, query.date_to)}"
        emails = await self._query(
            "emails",
            "activityid,subject,sender,torecipients,createdon,directioncode,description",
            filter,
            "createdon desc",
            top=50
        )
        lines = []
        for e in emails["records"]:
            body = _strip_html(e.get("description") or "")
            if len(body) > EMAIL_BODY_CHARS:
                body = body[:EMAIL_BODY_CHARS] + "...[truncated, use get_entity with the email id for full text]"
            lines.append(
                f"{self._email_line(e)}\nID: {e.get('activityid', '')}\n{body or '(no body text)'}"
            )
        result = self._edge(emails, EMAIL_HEADER, [])
        result["rows"] = "\n---\n".join(lines)
        return result

    def _email_line(self, e: Dict[str, Any], request_number: Optional[str] = None) -> str:
        direction = "Out" if e.get("directioncode") else "In"
        parts = [direction, _display(e, "createdon")]
        if request_number is not None:
            parts.append(f"Req {request_number}")
        parts.append(f"{(e.get('sender') or '')[:30]} -> {(e.get('torecipients') or '')[:40]}")
        parts.append((e.get("subject") or "")[:80])
        return " | ".join(parts)

    async def _request_annotations(self, source_id: str, query: RelationshipQuery) -> Dict[str, Any]:
        filter = f"_objectid_value eq {source_id}{_date_clause('createdon', query.date_from, query.date_to)}"
        notes = await self._query(
            "annotations",
            "annotationid,subject,notetext,filename,isdocument,createdon",
            filter,
            "createdon desc",
            top=50
        )
        lines = [
            " | ".join([
                _display(n, "createdon")[:10],
                (n.get("subject") or "(no subject)")[:80],
                n.get("filename") or "",
                _strip_html(n.get("notetext") or "")[:300],
            ])
            for n in notes["records"]
        ]
        return self._edge(notes, "Created | Subject | Attachment | Text", lines)

    async def _request_reviewers(self, source_id: str, query: RelationshipQuery) -> Dict[str, Any]:
        request = await self.crm.get_record("akoya_requests", source_id, select=",".join(REVIEWER_SLOTS))
        reviewer_ids = [request[slot] for slot in REVIEWER_SLOTS if request.get(slot)]
        if not reviewer_ids:
            return {
                "returned": 0,
                "totalMatched": 0,
                "hasMore": False,
                "header": "",
                "rows": "",
                "note": "No reviewers are assigned to this request.",
            }

        reviewers = await self._query(
            "wmkf_potentialreviewerses",
            "wmkf_potentialreviewersid,wmkf_name,wmkf_title,wmkf_organizationname,wmkf_emailaddress,wmkf_areaofexpertise",
            _any_of("wmkf_potentialreviewersid", reviewer_ids),
            "wmkf_name asc"
        )
        lines = [
            " | ".join([
                r.get("wmkf_name") or "?",
                r.get("wmkf_title") or "",
                r.get("wmkf_organizationname") or "",
                r.get("wmkf_emailaddress") or "",
                (r.get("wmkf_areaofexpertise") or "")[:100],
            ])
            for r in reviewers["records"]
        ]
        return self._edge(reviewers, "Name | Title | Organization | Email | Expertise", lines)