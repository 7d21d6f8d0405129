import httpx
import pytest

from dynamics_agent.domain.errors import CrmQueryError
from dynamics_agent.infrastructure.crm.dynamics_client import (
    FORMATTED_SUFFIX, LOOKUP_SUFFIX, DynamicsClient, logical_table_name, process_annotations
)

API = "https://crm.test/api/data/v9.2"


class FakeDataverse:
    """Token endpoint plus scripted Web API responses keyed by path"""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []
        self.token_requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "login.microsoftonline.com":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": "token-1", "expires_in": 3600})
        self.requests.append(request)
        route = self.routes[request.url.path]
        if callable(route):
            return route(request)
        return httpx.Response(route.status_code, headers=route.headers, content=route.content)


def _client(settings, routes) -> tuple:
    backend = FakeDataverse(routes)
    return DynamicsClient(settings, transport=httpx.MockTransport(backend)), backend


def test_process_annotations_renames_and_drops_metadata():
    record = {
        "@odata.etag": "W/\"1\"",
        "akoya_requeststatus": 1,
        f"akoya_requeststatus{FORMATTED_SUFFIX}": "Active",
        f"_akoya_applicantid_value{LOOKUP_SUFFIX}": "account",
    }

    assert process_annotations(record) == {
        "akoya_requeststatus": 1,
        "akoya_requeststatus_formatted": "Active",
        "_akoya_applicantid_value_entity": "account",
    }


def test_logical_table_name():
    assert logical_table_name("akoya_requests") == "akoya_request"
    assert logical_table_name("wmkf_potentialreviewerses") == "wmkf_potentialreviewers"
    assert logical_table_name("contact") == "contact"


@pytest.mark.asyncio
async def test_query_records_sends_odata_params(settings):
    routes = {"/api/data/v9.2/akoya_requests": httpx.Response(200, json={
        "@odata.count": 312,
        "@odata.nextLink": f"{API}/akoya_requests?$skiptoken=2",
        "value": [{"akoya_requestnum": "1001585", f"akoya_requeststatus{FORMATTED_SUFFIX}": "Active"}],
    })}
    client, backend = _client(settings, routes)

    result = await client.query_records(
        "akoya_requests", select="akoya_requestnum", filter="akoya_fiscalyear eq 'June 2025'", top=500
    )

    request = backend.requests[0]
    assert request.url.params["$top"] == "100"
    assert request.url.params["$count"] == "true"
    assert request.url.params["$filter"] == "akoya_fiscalyear eq 'June 2025'"
    assert request.headers["Authorization"] == "Bearer token-1"
    assert 'odata.include-annotations="*"' in request.headers["Prefer"]
    assert result == {
        "records": [{"akoya_requestnum": "1001585", "akoya_requeststatus_formatted": "Active"}],
        "count": 1,
        "totalCount": 312,
        "hasMore": True,
    }
    await client.aclose()


@pytest.mark.asyncio
async def test_unfiltered_query_over_limit_is_rejected(settings):
    client, backend = _client(settings, {})

    with pytest.raises(CrmQueryError, match="limited to 25"):
        await client.query_records("contacts", top=50)

    assert backend.requests == []
    await client.aclose()


@pytest.mark.asyncio
async def test_token_is_cached(settings):
    routes = {"/api/data/v9.2/contacts": httpx.Response(200, json={"value": []})}
    client, backend = _client(settings, routes)

    await client.query_records("contacts")
    await client.query_records("contacts")

    assert backend.token_requests == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_count_strips_byte_order_mark(settings):
    routes = {"/api/data/v9.2/akoya_requests/$count": httpx.Response(200, text="\ufeff1432")}
    client, _ = _client(settings, routes)

    assert await client.count_records("akoya_requests", filter="statecode eq 0") == 1432
    await client.aclose()


@pytest.mark.asyncio
async def test_query_all_follows_next_link(settings):
    pages = {
        None: {"@odata.count": 3, "value": [{"name": "A"}, {"name": "B"}],
               "@odata.nextLink": f"{API}/accounts?$skiptoken=page2"},
        "page2": {"value": [{"name": "C"}]},
    }

    def accounts(request):
        return httpx.Response(200, json=pages[request.url.params.get("$skiptoken")])

    client, backend = _client(settings, {"/api/data/v9.2/accounts": accounts})

    result = await client.query_all("accounts", select="name", filter="statecode eq 0")

    assert [r["name"] for r in result["records"]] == ["A", "B", "C"]
    assert result["totalCount"] == 3
    assert result["capped"] is False
    assert backend.requests[1].url.params.get("$filter") is None
    await client.aclose()


@pytest.mark.asyncio
async def test_query_all_stops_at_cap(settings):
    page = {"@odata.count": 9000, "value": [{"name": str(i)} for i in range(100)],
            "@odata.nextLink": f"{API}/accounts?$skiptoken=more"}
    client, backend = _client(settings, {"/api/data/v9.2/accounts": httpx.Response(200, json=page)})

    result = await client.query_all("accounts", filter="statecode eq 0", max_records=150)

    assert len(result["records"]) == 150
    assert result["capped"] is True
    assert len(backend.requests) == 2
    await client.aclose()


@pytest.mark.asyncio
async def test_http_error_becomes_crm_query_error(settings):
    routes = {"/api/data/v9.2/contacts": httpx.Response(400, text="Could not find a property named 'nam'")}
    client, _ = _client(settings, routes)

    with pytest.raises(CrmQueryError) as info:
        await client.query_records("contacts", filter="nam eq 'x'")

    assert info.value.status_code == 400
    assert "Could not find a property" in str(info.value)
    await client.aclose()


@pytest.mark.asyncio
async def test_search_flattens_hits(settings):
    routes = {"/api/search/v1.0/query": httpx.Response(200, json={
        "totalrecordcount": 1,
        "value": [{
            "@search.entityname": "account",
            "@search.objectid": "a-1",
            "@search.score": 4.2,
            "@search.highlights": {"name": ["{crmhit}Caltech{/crmhit}"]},
            "name": "Caltech",
            "ownerid": "o-1",
            "address1_city": None,
        }],
    })}
    client, backend = _client(settings, routes)

    result = await client.search("caltech", entities=["account"], top=500)

    assert backend.requests[0].method == "POST"
    assert result["totalCount"] == 1
    assert result["results"] == [{
        "entity": "account",
        "objectId": "a-1",
        "score": 4.2,
        "highlights": {"name": ["{crmhit}Caltech{/crmhit}"]},
        "attributes": {"name": "Caltech"},
    }]
    await client.aclose()


@pytest.mark.asyncio
async def test_resolve_entity_set_uses_definitions_for_unknown_tables(settings):
    routes = {"/api/data/v9.2/EntityDefinitions": httpx.Response(200, json={"value": [
        {"LogicalName": "wmkf_meeting", "EntitySetName": "wmkf_meetings"},
    ]})}
    client, _ = _client(settings, routes)

    assert await client.resolve_entity_set("akoya_request") == "akoya_requests"
    assert await client.resolve_entity_set("wmkf_meeting") == "wmkf_meetings"
    with pytest.raises(CrmQueryError, match="Unknown table"):
        await client.resolve_entity_set("nope")
    await client.aclose()
