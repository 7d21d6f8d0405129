from typing import Dict, Any, List, Optional
import time
import httpx
import structlog

from dynamics_agent.domain.errors import ConfigurationError, CrmQueryError
from dynamics_agent.infrastructure.config import Settings, get_settings
from dynamics_agent.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

API_VERSION = "v9.2"
MAX_TOP = 100
UNFILTERED_MAX_TOP = 25

FORMATTED_SUFFIX = "@OData.Community.Display.V1.FormattedValue"
LOOKUP_SUFFIX = "@Microsoft.Dynamics.CRM.lookuplogicalname"

KNOWN_ENTITY_SETS: Dict[str, str] = {
    "akoya_request": "akoya_requests",
    "akoya_concept": "akoya_concepts",
    "akoya_requestpayment": "akoya_requestpayments",
    "contact": "contacts",
    "account": "accounts",
    "email": "emails",
    "annotation": "annotations",
    "akoya_program": "akoya_programs",
    "akoya_phase": "akoya_phases",
    "akoya_goapplystatustracking": "akoya_goapplystatustrackings",
    "activitypointer": "activitypointers",
    "systemuser": "systemusers",
    "wmkf_potentialreviewers": "wmkf_potentialreviewerses",
    "wmkf_donors": "wmkf_donorses",
    "wmkf_bbstatus": "wmkf_bbstatuses",
    "wmkf_grantprogram": "wmkf_grantprograms",
    "wmkf_type": "wmkf_types",
    "wmkf_supporttype": "wmkf_supporttypes",
    "wmkf_programlevel2": "wmkf_programlevel2s",
}

LOGICAL_NAMES: Dict[str, str] = {entity_set: name for name, entity_set in KNOWN_ENTITY_SETS.items()}


def logical_table_name(name: str) -> str:
    """Map an entity set name back to its logical table name"""
    return LOGICAL_NAMES.get(name, name)


def process_annotations(record: Any) -> Any:
    """Rename OData annotations to ``<field>_formatted`` / ``<field>_entity``"""

    if not isinstance(record, dict):
        return record

    processed = {}
    for key, value in record.items():
        if key.startswith("@odata") or key.startswith("@Microsoft"):
            continue
        if key.endswith(FORMATTED_SUFFIX):
            processed[f"{key[:-len(FORMATTED_SUFFIX)]}_formatted"] = value
        elif key.endswith(LOOKUP_SUFFIX):
            processed[f"{key[:-len(LOOKUP_SUFFIX)]}_entity"] = value
        else:
            processed[key] = value
    return processed


class DynamicsClient:
    """Read-only client for the Dataverse Web API"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.settings = settings or get_settings()
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.dynamics_timeout_seconds),
            transport=transport
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._entity_set_map: Optional[Dict[str, str]] = None

    async def aclose(self):
        await self._client.aclose()

    @property
    def base_url(self) -> str:
        if not self.settings.dynamics_url:
            raise ConfigurationError("DYNAMICS_URL is not configured")
        return self.settings.dynamics_url.rstrip("/")

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/api/data/{API_VERSION}"

    async def _get_access_token(self) -> str:
        """Client-credentials token, cached until a minute before expiry"""

        now = time.time()
        if self._token and self._token_expires_at > now + 60:
            return self._token

        settings = self.settings
        if not all([settings.dynamics_url, settings.dynamics_tenant_id,
                    settings.dynamics_client_id, settings.dynamics_client_secret]):
            raise ConfigurationError(
                "Missing Dynamics 365 settings (DYNAMICS_URL, DYNAMICS_TENANT_ID, "
                "DYNAMICS_CLIENT_ID, DYNAMICS_CLIENT_SECRET)"
            )

        token_url = f"https://login.microsoftonline.com/{settings.dynamics_tenant_id}/oauth2/v2.0/token"
        response = await self._send("POST", token_url, data={
            "grant_type": "client_credentials",
            "client_id": settings.dynamics_client_id,
            "client_secret": settings.dynamics_client_secret,
            "scope": f"{self.base_url}/.default",
        })
        if not response.is_success:
            raise CrmQueryError(
                f"Dynamics token request failed ({response.status_code}): {response.text}",
                status_code=response.status_code
            )

        data = response.json()
        self._token = data["access_token"]
        self._token_expires_at = now + float(data.get("expires_in", 3600))
        return self._token

    async def _headers(self) -> Dict[str, str]:
        token = await self._get_access_token()
        return {
            "Authorization": f"Bearer {token}",
            "OData-Version": "4.0",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Prefer": 'odata.include-annotations="*",odata.maxpagesize=100',
        }

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            raise CrmQueryError(
                f"Dynamics API request timed out after {self.settings.dynamics_timeout_seconds}s"
            )
        except httpx.HTTPError as exc:
            raise CrmQueryError(f"Dynamics API request failed: {exc}")

    async def _request(self, method: str, url: str, action: str, **kwargs) -> httpx.Response:
        started = time.monotonic()
        response = await self._send(method, url, headers=await self._headers(), **kwargs)
        metrics.record_latency(f"crm.{action}", (time.monotonic() - started) * 1000)
        if not response.is_success:
            raise CrmQueryError(
                f"{action.capitalize()} failed ({response.status_code}): {response.text}",
                status_code=response.status_code
            )
        return response

    async def get_entity_definitions(self) -> List[Dict[str, Any]]:
        """List public tables with their entity set names"""

        response = await self._request(
            "GET",
            f"{self.api_url}/EntityDefinitions",
            "entity definitions",
            params={
                "$select": "LogicalName,EntitySetName",
                "$filter": "IsPrivate eq false",
            }
        )
        definitions = [
            {"logicalName": item.get("LogicalName"), "entitySetName": item.get("EntitySetName")}
            for item in response.json().get("value", [])
        ]
        self._entity_set_map = {d["logicalName"]: d["entitySetName"] for d in definitions}
        return definitions

    async def resolve_entity_set(self, table_name: str) -> str:
        """Accept a logical name or entity set name and return the entity set name"""

        if table_name in KNOWN_ENTITY_SETS:
            return KNOWN_ENTITY_SETS[table_name]
        if table_name in LOGICAL_NAMES:
            return table_name
        if self._entity_set_map is None:
            await self.get_entity_definitions()
        entity_set = (self._entity_set_map or {}).get(table_name)
        if not entity_set:
            raise CrmQueryError(
                f'Unknown table "{table_name}". Known tables: {", ".join(KNOWN_ENTITY_SETS)}. '
                "Use describe_table to list tables."
            )
        return entity_set

    async def query_records(
        self,
        entity_set: str,
        select: Optional[str] = None,
        filter: Optional[str] = None,
        orderby: Optional[str] = None,
        top: Optional[int] = None,
        expand: Optional[str] = None
    ) -> Dict[str, Any]:
        """Run one OData query and return records plus counts"""

        effective_top = min(top or UNFILTERED_MAX_TOP, MAX_TOP)
        if not filter and effective_top > UNFILTERED_MAX_TOP:
            raise CrmQueryError(
                f"Queries without $filter are limited to {UNFILTERED_MAX_TOP} records. "
                "Add a filter or reduce $top."
            )

        params = {"$top": str(effective_top), "$count": "true"}
        if select:
            params["$select"] = select
        if filter:
            params["$filter"] = filter
        if orderby:
            params["$orderby"] = orderby
        if expand:
            params["$expand"] = expand

        response = await self._request("GET", f"{self.api_url}/{entity_set}", "query", params=params)
        data = response.json()
        records = [process_annotations(r) for r in data.get("value", [])]
        total = data.get("@odata.count")

        return {
            "records": records,
            "count": len(records),
            "totalCount": total if total is not None else len(records),
            "hasMore": bool(data.get("@odata.nextLink")),
        }

    async def query_all(
        self,
        entity_set: str,
        select: Optional[str] = None,
        filter: Optional[str] = None,
        orderby: Optional[str] = None,
        max_records: int = 5000
    ) -> Dict[str, Any]:
        """Follow server pagination until every match or the cap is collected"""

        params = {"$count": "true"}
        if select:
            params["$select"] = select
        if filter:
            params["$filter"] = filter
        if orderby:
            params["$orderby"] = orderby

        records: List[Dict[str, Any]] = []
        total = None
        url: Optional[str] = f"{self.api_url}/{entity_set}"
        while url and len(records) < max_records:
            response = await self._request("GET", url, "export query", params=params)
            data = response.json()
            if total is None:
                total = data.get("@odata.count")
            records.extend(process_annotations(r) for r in data.get("value", []))
            url = data.get("@odata.nextLink")
            params = None

        logger.info("Collected export records", entity_set=entity_set, records=len(records), total=total)
        return {
            "records": records[:max_records],
            "totalCount": total if total is not None else len(records),
            "capped": len(records) >= max_records and bool(url),
        }

    async def get_record(
        self,
        entity_set: str,
        record_id: str,
        select: Optional[str] = None,
        expand: Optional[str] = None
    ) -> Dict[str, Any]:
        params = {}
        if select:
            params["$select"] = select
        if expand:
            params["$expand"] = expand
        response = await self._request(
            "GET", f"{self.api_url}/{entity_set}({record_id})", "get record", params=params or None
        )
        return process_annotations(response.json())

    async def count_records(self, entity_set: str, filter: Optional[str] = None) -> int:
        params = {"$filter": filter} if filter else None
        response = await self._request("GET", f"{self.api_url}/{entity_set}/$count", "count", params=params)
        return int(response.text.strip().lstrip("\ufeff"))

    async def search(
        self,
        search: str,
        entities: Optional[List[str]] = None,
        top: int = 20,
        filter: Optional[str] = None
    ) -> Dict[str, Any]:
        """Relevance-ranked full-text search across indexed tables"""

        body: Dict[str, Any] = {
            "search": search,
            "top": min(top or 20, MAX_TOP),
            "returntotalrecordcount": True,
        }
        if entities:
            body["entities"] = entities
        if filter:
            body["filter"] = filter

        response = await self._request("POST", f"{self.base_url}/api/search/v1.0/query", "search", json=body)
        data = response.json()

        results = []
        for item in data.get("value", []):
            attributes = {
                key: value for key, value in item.items()
                if not key.startswith("@search.")
                and key not in ("ownerid", "owneridname")
                and value not in (None, "")
            }
            results.append({
                "entity": item.get("@search.entityname"),
                "objectId": item.get("@search.objectid"),
                "score": item.get("@search.score") or 0,
                "highlights": item.get("@search.highlights") or {},
                "attributes": attributes,
            })

        return {
            "results": results,
            "totalCount": data.get("totalrecordcount", len(results)),
            "queryContext": data.get("querycontext"),
        }
