from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
import re
import structlog

from dynamics_agent.domain.errors import CrmQueryError, ToolInputError
from dynamics_agent.domain.tool.result_shaper import strip_empty

logger = structlog.get_logger(__name__)

GUID_PATTERN = re.compile(r"^\{?[0-9a-fA-F]{8}-(?:[0-9a-fA-F]{4}-){3}[0-9a-fA-F]{12}\}?$")

ALIAS_SCORE_RATIO = 0.8
ALIAS_MAX_HITS = 3
LOOKUP_TOP = 10


def is_guid(value: Optional[str]) -> bool:
    return bool(value) and bool(GUID_PATTERN.match(value.strip()))


def odata_quote(value: str) -> str:
    return value.replace("'", "''")


class EntityType(BaseModel):
    """How one entity type is looked up"""
    table: str
    entity_set: str
    id_field: str
    name_fields: List[str]
    number_field: Optional[str] = None
    activity_field: Optional[str] = None
    select: str
    alias_search: bool = False


ENTITY_TYPES: Dict[str, EntityType] = {
    "account": EntityType(
        table="account",
        entity_set="accounts",
        id_field="accountid",
        name_fields=["name", "akoya_aka", "wmkf_dc_aka"],
        number_field="akoya_constituentnum",
        activity_field="akoya_countofrequests",
        select="accountid,name,akoya_aka,wmkf_dc_aka,akoya_constituentnum,akoya_countofrequests,"
               "akoya_countofawards,akoya_totalgrants,address1_city,address1_stateorprovince,websiteurl",
        alias_search=True,
    ),
    "request": EntityType(
        table="akoya_request",
        entity_set="akoya_requests",
        id_field="akoya_requestid",
        name_fields=["akoya_title"],
        number_field="akoya_requestnum",
        select="akoya_requestid,akoya_requestnum,akoya_title,akoya_requeststatus,akoya_submitdate,"
               "akoya_fiscalyear,akoya_request,akoya_grant,akoya_paid,akoya_balance,akoya_begindate,"
               "akoya_enddate,_akoya_applicantid_value,_akoya_primarycontactid_value,"
               "_wmkf_projectleader_value,_akoya_programid_value,_wmkf_programdirector_value,"
               "wmkf_phaseistatus,wmkf_phaseiistatus",
    ),
    "contact": EntityType(
        table="contact",
        entity_set="contacts",
        id_field="contactid",
        name_fields=["fullname"],
        number_field="akoya_contactnum",
        select="contactid,fullname,jobtitle,emailaddress1,telephone1,akoya_contactnum,_parentcustomerid_value",
    ),
    "reviewer": EntityType(
        table="wmkf_potentialreviewers",
        entity_set="wmkf_potentialreviewerses",
        id_field="wmkf_potentialreviewersid",
        name_fields=["wmkf_name"],
        select="wmkf_potentialreviewersid,wmkf_name,wmkf_title,wmkf_emailaddress,"
               "wmkf_organizationname,wmkf_areaofexpertise",
    ),
    "email": EntityType(
        table="email",
        entity_set="emails",
        id_field="activityid",
        name_fields=["subject"],
        select="activityid,subject,sender,torecipients,createdon,directioncode,_regardingobjectid_value",
    ),
    "payment": EntityType(
        table="akoya_requestpayment",
        entity_set="akoya_requestpayments",
        id_field="akoya_requestpaymentid",
        name_fields=["akoya_paymentnum"],
        number_field="akoya_paymentnum",
        select="akoya_requestpaymentid,akoya_paymentnum,akoya_type,akoya_amount,akoya_paymentdate,"
               "akoya_requirementdue,akoya_folio,_akoya_requestlookup_value,_akoya_requestapplicant_value",
    ),
    "staff": EntityType(
        table="systemuser",
        entity_set="systemusers",
        id_field="systemuserid",
        name_fields=["fullname"],
        select="systemuserid,fullname,internalemailaddress,isdisabled",
    ),
}


class EntityResolution(BaseModel):
    """Outcome of resolving a human identifier to one record"""
    record: Optional[Dict[str, Any]] = None
    candidates: List[Dict[str, Any]] = Field(default_factory=list)
    note: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.record is not None


def get_entity_type(type_name: str) -> EntityType:
    entity_type = ENTITY_TYPES.get(type_name or "")
    if entity_type is None:
        raise ToolInputError(f'Unknown entity type "{type_name}". Valid types: {", ".join(ENTITY_TYPES)}')
    return entity_type


def record_label(entity_type: EntityType, record: Dict[str, Any]) -> str:
    for field in entity_type.name_fields + ([entity_type.number_field] if entity_type.number_field else []):
        value = record.get(field)
        if value:
            return str(value)
    return str(record.get(entity_type.id_field, "?"))


class EntityResolver:
    """Maps names, numbers and GUIDs to CRM records"""

    def __init__(self, crm):
        self.crm = crm

    def build_lookup_filter(self, entity_type: EntityType, identifier: str) -> str:
        """Exact match for numbers, substring match over the name fields otherwise"""

        quoted = odata_quote(identifier)
        if identifier.isdigit() and entity_type.number_field:
            return f"{entity_type.number_field} eq '{quoted}'"
        return " or ".join(f"contains({field},'{quoted}')" for field in entity_type.name_fields)

    async def resolve(self, type_name: str, identifier: str) -> EntityResolution:
        entity_type = get_entity_type(type_name)
        identifier = (identifier or "").strip()
        if not identifier:
            raise ToolInputError("identifier is required")

        if is_guid(identifier):
            record = await self.crm.get_record(
                entity_type.entity_set, identifier.strip("{}"), select=entity_type.select
            )
            return EntityResolution(record=record)

        result = await self.crm.query_records(
            entity_type.entity_set,
            select=entity_type.select,
            filter=self.build_lookup_filter(entity_type, identifier),
            top=LOOKUP_TOP
        )
        candidates = list(result.get("records") or [])

        if entity_type.alias_search and not identifier.isdigit():
            candidates.extend(await self._alias_candidates(entity_type, identifier, candidates))

        return self.disambiguate(entity_type, identifier, candidates)

    async def _alias_candidates(
        self,
        entity_type: EntityType,
        identifier: str,
        candidates: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """High-confidence full-text hits not already among the candidates"""

        try:
            search = await self.crm.search(identifier, entities=[entity_type.table], top=ALIAS_MAX_HITS * 2)
        except CrmQueryError as e:
            logger.warning("Alias search failed, using direct lookup only", identifier=identifier, error=str(e))
            return []

        hits = [h for h in search.get("results") or [] if h.get("objectId")]
        if not hits:
            return []
        top_score = max(h.get("score") or 0 for h in hits)
        known = {c.get(entity_type.id_field) for c in candidates}

        extra = []
        for hit in sorted(hits, key=lambda h: h.get("score") or 0, reverse=True):
            if len(extra) >= ALIAS_MAX_HITS:
                break
            if (hit.get("score") or 0) < top_score * ALIAS_SCORE_RATIO or hit["objectId"] in known:
                continue
            try:
                record = await self.crm.get_record(entity_type.entity_set, hit["objectId"], select=entity_type.select)
            except CrmQueryError as e:
                logger.warning("Skipping stale alias hit", object_id=hit["objectId"], error=str(e))
                continue
            extra.append(record)
            known.add(hit["objectId"])
        return extra

    def disambiguate(
        self,
        entity_type: EntityType,
        identifier: str,
        candidates: List[Dict[str, Any]]
    ) -> EntityResolution:
        if not candidates:
            return EntityResolution()

        wanted = identifier.strip().lower()
        match_fields = entity_type.name_fields + ([entity_type.number_field] if entity_type.number_field else [])
        exact = [
            c for c in candidates
            if any(str(c.get(field) or "").strip().lower() == wanted for field in match_fields)
        ]

        if len(exact) == 1:
            return EntityResolution(record=exact[0])

        if len(exact) > 1:
            activity = entity_type.activity_field
            best = max(exact, key=lambda c: (c.get(activity) or 0) if activity else 0)
            return EntityResolution(
                record=best,
                candidates=exact,
                note=(
                    f'{len(exact)} records match "{identifier}" exactly; picked the most active one. '
                    "Ask the user to confirm if a different one was meant."
                )
            )

        if len(candidates) == 1:
            return EntityResolution(record=candidates[0])

        return EntityResolution(
            record=candidates[0],
            candidates=candidates,
            note=(
                f'No exact match for "{identifier}"; using the first of {len(candidates)} candidates. '
                "Ask the user to confirm if ambiguous."
            )
        )

    def summarize_candidates(self, entity_type: EntityType, candidates: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {"id": c.get(entity_type.id_field), "label": record_label(entity_type, c)}
            for c in candidates
        ]

    async def get_entity(self, type_name: str, identifier: str) -> Dict[str, Any]:
        """Tool entry point: one record with disambiguation notes"""

        entity_type = get_entity_type(type_name)
        resolution = await self.resolve(type_name, identifier)
        if not resolution.found:
            return {"error": f'No {type_name} found matching "{identifier}"'}

        result: Dict[str, Any] = {
            "type": type_name,
            "id": resolution.record.get(entity_type.id_field),
            "label": record_label(entity_type, resolution.record),
            "record": strip_empty(resolution.record),
        }
        if resolution.note:
            result["note"] = resolution.note
        if resolution.candidates:
            result["candidates"] = self.summarize_candidates(entity_type, resolution.candidates)
        return result
