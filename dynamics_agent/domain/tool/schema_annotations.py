from typing import Dict, Any, List, Optional

# Field semantics and OData rules per table. The four most used tables are
# rendered into the system prompt; the rest are served by describe_table.
TABLE_ANNOTATIONS: Dict[str, Dict[str, Any]] = {
    "akoya_request": {
        "description": "Proposals and grants (5000+). Central hub entity; most queries start here.",
        "entitySet": "akoya_requests",
        "fields": {
            "akoya_requestnum": "string - unique request number (e.g. \"1001585\")",
            "akoya_title": "string - proposal title",
            "akoya_requeststatus": "string - overall status (\"Concept Pending\", \"Phase I Declined\", \"Phase II Pending\", \"Active\", \"Closed\", etc.)",
            "akoya_submitdate": "datetime - submission date",
            "akoya_fiscalyear": "string - grant cycle label like \"June 2025\" (NOT calendar year)",
            "akoya_paid": "currency - total amount paid",
            "akoya_loireceived": "datetime - Phase I proposal received date",
            "statecode": "int - record state (0=active, 1=inactive)",
            "createdon": "datetime - record creation date",
            "_akoya_applicantid_value": "lookup -> account - applicant organization",
            "_akoya_primarycontactid_value": "lookup -> contact - liaison / primary contact at institution",
            "_wmkf_programdirector_value": "lookup -> systemuser - staff program director",
            "_wmkf_programcoordinator_value": "lookup -> systemuser - staff coordinator",
            "_wmkf_grantprogram_value": "lookup -> wmkf_grantprogram - broad grant program category. \"SoCal\" = \"Southern California\" here.",
            "_akoya_programid_value": "lookup -> akoya_program - specific program (\"Science and Engineering Research\" = S&E, \"Medical Research\" = MR). Look up the program GUID first.",
            "wmkf_request_type": "string - concept, phone call, site visit, or grant application",
            "wmkf_meetingdate": "datetime - board meeting date",
            "wmkf_phaseistatus": "string - Phase I outcome (Invited, Not Invited, Ineligible, Request Withdrawn)",
            "wmkf_phaseiistatus": "string - Phase II outcome (Approved, Phase II Declined, Phase II Pending Committee Review, Phase II Withdrawn)",
            "wmkf_conceptcalldate": "datetime - scheduled concept discussion call",
            "akoya_request": "currency - \"the ask\" / amount requested",
            "akoya_expenses": "currency - total project cost including cost share",
            "akoya_grant": "currency - award / grant amount",
            "akoya_balance": "currency - remaining balance on grant",
            "akoya_decisiondate": "datetime - board decision date",
            "akoya_begindate": "datetime - grant start date",
            "akoya_enddate": "datetime - grant end date",
            "_wmkf_projectleader_value": "lookup -> contact - PI / principal investigator",
            "_wmkf_researchleader_value": "lookup -> contact - VP for research",
            "_wmkf_ceo_value": "lookup -> contact - CEO / president / chancellor",
            "_wmkf_authorizedofficial_value": "lookup -> contact - authorized official",
            "_wmkf_paymentcontact_value": "lookup -> contact - payment contact",
            "_wmkf_copi1_value..5": "lookup -> contact - co-PIs (5 slots)",
            "wmkf_abstract": "string - proposal abstract (use search for keyword discovery)",
            "_wmkf_potentialreviewer1_value..5": "lookup -> wmkf_potentialreviewers - assigned reviewers (5 slots)",
            "wmkf_excludedreviewers": "string - excluded reviewer names and reasons",
        },
        "rules": [
            "FISCAL YEAR: akoya_fiscalyear stores labels like \"June 2025\". When filtering by year, use OR: (contains(akoya_fiscalyear,'2025') or (akoya_submitdate ge 2025-01-01T00:00:00Z and akoya_submitdate lt 2026-01-01T00:00:00Z))",
            "Lookup _value fields return GUIDs; _formatted versions return display names automatically. Only $select the _value field, never _formatted.",
            "Null fields are stripped from results. Only $select fields you will display.",
            "PROGRAM DIRECTOR: query systemusers for the GUID first, then filter requests by _wmkf_programdirector_value eq {guid}.",
        ],
    },
    "akoya_requestpayment": {
        "description": "Payments and reporting requirements (5000+). Dual-purpose table.",
        "entitySet": "akoya_requestpayments",
        "fields": {
            "akoya_paymentnum": "string - unique payment/report number",
            "akoya_type": "boolean - true=reporting requirement, false=payment. CRITICAL for filtering.",
            "akoya_amount": "currency - payment amount",
            "akoya_netamount": "currency - net payment amount",
            "akoya_paymentdate": "datetime - payment date",
            "akoya_estimatedgrantpaydate": "datetime - estimated payment date",
            "akoya_requirementdue": "datetime - report due date",
            "akoya_requirementtype": "int option set - interim or final. Do NOT filter as string.",
            "akoya_folio": "string - payment status",
            "wmkf_reporttype": "int option set - detailed report type. Do NOT filter as string.",
            "statecode": "int - record state",
            "_akoya_requestlookup_value": "lookup -> akoya_request - parent request",
            "_akoya_requestapplicant_value": "lookup -> account - applicant organization",
            "_akoya_requestcontact_value": "lookup -> contact - contact person",
            "_akoya_payee_value": "lookup -> account - payee organization",
        },
        "rules": [
            "Use akoya_type eq false for payments only, akoya_type eq true for reporting requirements only.",
            "Option set fields are integers. Query a few records and inspect the _formatted values to find codes.",
        ],
    },
    "contact": {
        "description": "People associated with organizations and requests (5000+).",
        "entitySet": "contacts",
        "fields": {
            "fullname": "string - full name",
            "firstname": "string - first name",
            "lastname": "string - last name",
            "emailaddress1": "string - primary email",
            "jobtitle": "string - job title",
            "telephone1": "string - phone number",
            "akoya_contactnum": "string - unique contact number",
            "contactid": "guid - primary key",
            "createdon": "datetime - record creation date",
        },
        "rules": [],
    },
    "account": {
        "description": "Organizations: universities, institutions, companies (4500+).",
        "entitySet": "accounts",
        "fields": {
            "name": "string - organization name (legal or common name)",
            "akoya_aka": "string - common/short name. 95% populated.",
            "wmkf_legalname": "string - official legal name",
            "wmkf_dc_aka": "string - abbreviations and alternate names (e.g. \"MGH\")",
            "wmkf_formerlyknownas": "string - historical names",
            "akoya_constituentnum": "string - unique organization ID",
            "akoya_totalgrants": "currency - total grant amount",
            "akoya_countofawards": "int - number of awards",
            "akoya_countofrequests": "int - number of requests",
            "wmkf_eastwest": "string - geographic region: east/west US",
            "address1_city": "string - city",
            "address1_stateorprovince": "string - state",
            "websiteurl": "string - website",
            "akoya_institutiontype": "string - institution type",
            "accountid": "guid - primary key",
        },
        "rules": [
            "contains() on name may match several orgs (\"University of Chicago\" matches \"Loyola University Of Chicago\"). Prefer the exact match.",
            "Many orgs use legal names that differ from common names. get_entity searches name, akoya_aka and wmkf_dc_aka automatically.",
        ],
    },
    "email": {
        "description": "Email activities linked to requests (5000+).",
        "entitySet": "emails",
        "fields": {
            "subject": "string - email subject",
            "description": "string - email body (HTML)",
            "sender": "string - sender address",
            "torecipients": "string - recipients",
            "createdon": "datetime - record creation date",
            "directioncode": "boolean - true=outgoing, false=incoming",
            "activityid": "guid - primary key",
            "_regardingobjectid_value": "lookup - linked request or record",
        },
        "rules": [
            "DATE FILTERING: senton is NULL for incoming emails. ALWAYS filter by createdon.",
        ],
    },
    "annotation": {
        "description": "Notes and attachments on records (5000+).",
        "entitySet": "annotations",
        "fields": {
            "subject": "string - note subject",
            "notetext": "string - note body text",
            "filename": "string - attachment filename",
            "mimetype": "string - attachment MIME type",
            "isdocument": "boolean - has attachment",
            "createdon": "datetime - record creation date",
            "annotationid": "guid - primary key",
            "_objectid_value": "lookup - parent record",
        },
        "rules": [],
    },
    "wmkf_potentialreviewers": {
        "description": "Reviewer pool (3141). Linked to requests via 5 reviewer slots.",
        "entitySet": "wmkf_potentialreviewerses",
        "fields": {
            "wmkf_name": "string - full name",
            "wmkf_title": "string - title/position",
            "wmkf_emailaddress": "string - email",
            "wmkf_organizationname": "string - organization",
            "wmkf_areaofexpertise": "string - area of expertise",
            "wmkf_potentialreviewersid": "guid - primary key",
        },
        "rules": [],
    },
    "systemuser": {
        "description": "Foundation staff / Dynamics users (212). Linked to requests via program director and coordinator.",
        "entitySet": "systemusers",
        "fields": {
            "fullname": "string - full name",
            "internalemailaddress": "string - email address",
            "systemuserid": "guid - primary key. Filter requests with _wmkf_programdirector_value eq {guid}",
            "isdisabled": "boolean - true if account disabled",
        },
        "rules": [
            "To find requests by director name: query systemusers with contains(fullname,'name') for the GUID, then filter akoya_requests.",
        ],
    },
    "akoya_program": {
        "description": "Program definitions (24 values, e.g. \"Bridge Funding\", \"Phase II\").",
        "entitySet": "akoya_programs",
        "fields": {
            "akoya_program": "string - program name",
            "wmkf_code": "string - program code",
            "wmkf_alternatename": "string - alternate name",
            "akoya_programid": "guid - primary key. Filter requests with _akoya_programid_value eq {guid}",
        },
        "rules": [
            "To find requests by program name: query akoya_programs with contains(akoya_program,'name') for the GUID, then filter akoya_requests.",
        ],
    },
    "wmkf_grantprogram": {
        "description": "Grant program lookup (11 values).",
        "entitySet": "wmkf_grantprograms",
        "fields": {
            "wmkf_name": "string - program name",
            "wmkf_code": "string - program code",
            "wmkf_grantprogramid": "guid - primary key",
        },
        "rules": [],
    },
    "wmkf_type": {
        "description": "Organizational type codes (8 values).",
        "entitySet": "wmkf_types",
        "fields": {
            "wmkf_name": "string - type name",
            "wmkf_typeid": "guid - primary key",
        },
        "rules": [],
    },
    "wmkf_bbstatus": {
        "description": "Status codes (88 values).",
        "entitySet": "wmkf_bbstatuses",
        "fields": {
            "wmkf_name": "string - status name",
            "wmkf_bbcode": "string - status code",
            "wmkf_bbstatusid": "guid - primary key",
        },
        "rules": [],
    },
    "akoya_phase": {
        "description": "Application phases (62 values).",
        "entitySet": "akoya_phases",
        "fields": {
            "akoya_phasename": "string - phase name",
            "akoya_phaseorder": "int - display order",
            "_akoya_application_value": "lookup -> akoya_program - parent program",
        },
        "rules": [],
    },
    "activitypointer": {
        "description": "All activity types: emails, tasks, appointments (5000+).",
        "entitySet": "activitypointers",
        "fields": {
            "subject": "string - activity subject",
            "activitytypecode": "string - activity type",
            "createdon": "datetime - record creation date",
            "activityid": "guid - primary key",
            "_regardingobjectid_value": "lookup - linked record",
        },
        "rules": [],
    },
}

INLINE_SCHEMA_TABLES = ["akoya_request", "account", "contact", "akoya_requestpayment"]


def render_table(name: str) -> str:
    """Compact text rendering of one table's annotations"""

    table = TABLE_ANNOTATIONS[name]
    lines = [f"{name} ({table['entitySet']}) - {table['description']}"]
    lines.extend(f"  {field}: {desc}" for field, desc in table["fields"].items())
    if table["rules"]:
        lines.append("  RULES:")
        lines.extend(f"  - {rule}" for rule in table["rules"])
    return "\n".join(lines)


def describe_table(table_name: Optional[str]) -> Dict[str, Any]:
    """Field listing for one table, or the table listing when the name is unknown"""

    name = (table_name or "").strip()
    if name not in TABLE_ANNOTATIONS:
        name = next(
            (key for key, value in TABLE_ANNOTATIONS.items() if value["entitySet"] == name),
            name
        )
    table = TABLE_ANNOTATIONS.get(name)
    if table is None:
        tables: List[str] = [
            f"{key} ({value['entitySet']}): {value['description']}"
            for key, value in TABLE_ANNOTATIONS.items()
        ]
        message = "Unknown table. Available tables are listed." if name else "Available tables are listed."
        return {"count": len(tables), "tables": tables, "message": message}

    return {
        "table": name,
        "entitySet": table["entitySet"],
        "description": table["description"],
        "fields": table["fields"],
        "rules": table["rules"],
    }
