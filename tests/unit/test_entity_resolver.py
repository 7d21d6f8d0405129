import pytest

from dynamics_agent.domain.errors import CrmQueryError, ToolInputError
from dynamics_agent.domain.tool.entity_resolver import ENTITY_TYPES, EntityResolver, is_guid

GUID = "3f2504e0-4f89-11d3-9a0c-0305e82c3301"
OTHER_GUID = "9b2c1f6a-1111-4a2b-8c3d-123456789abc"


class TestLookupFilter:
    def test_digits_use_number_field(self, crm):
        resolver = EntityResolver(crm)

        assert resolver.build_lookup_filter(ENTITY_TYPES["request"], "1001585") == "akoya_requestnum eq '1001585'"

    def test_names_use_contains_over_name_fields(self, crm):
        resolver = EntityResolver(crm)

        out = resolver.build_lookup_filter(ENTITY_TYPES["account"], "O'Brien Institute")

        assert out == (
            "contains(name,'O''Brien Institute') or contains(akoya_aka,'O''Brien Institute') "
            "or contains(wmkf_dc_aka,'O''Brien Institute')"
        )


def test_is_guid():
    assert is_guid(GUID)
    assert is_guid("{" + GUID + "}")
    assert not is_guid("1001585")
    assert not is_guid(None)


@pytest.mark.asyncio
async def test_guid_is_fetched_directly(crm):
    crm.records[GUID] = {"akoya_requestid": GUID, "akoya_requestnum": "1001585", "akoya_title": "Imaging"}

    result = await EntityResolver(crm).get_entity("request", GUID)

    assert result["id"] == GUID
    assert result["label"] == "Imaging"
    assert crm.call_names() == ["get_record"]


@pytest.mark.asyncio
async def test_single_exact_match_wins(crm):
    crm.query_handler = lambda entity_set, **kw: {"records": [
        {"contactid": GUID, "fullname": "Maria Chen"},
        {"contactid": OTHER_GUID, "fullname": "Maria Chen-Lopez"},
    ]}

    result = await EntityResolver(crm).get_entity("contact", "maria chen")

    assert result["id"] == GUID
    assert "note" not in result


@pytest.mark.asyncio
async def test_several_exact_matches_pick_most_active(crm):
    crm.query_handler = lambda entity_set, **kw: {"records": [
        {"accountid": GUID, "name": "University of Washington", "akoya_countofrequests": 4},
        {"accountid": OTHER_GUID, "name": "University of Washington", "akoya_countofrequests": 31},
    ]}

    result = await EntityResolver(crm).get_entity("account", "University of Washington")

    assert result["id"] == OTHER_GUID
    assert "picked the most active" in result["note"]
    assert {c["id"] for c in result["candidates"]} == {GUID, OTHER_GUID}


@pytest.mark.asyncio
async def test_no_exact_match_returns_first_with_candidates(crm):
    crm.query_handler = lambda entity_set, **kw: {"records": [
        {"contactid": GUID, "fullname": "Robert Smith"},
        {"contactid": OTHER_GUID, "fullname": "Roberta Smithson"},
    ]}

    result = await EntityResolver(crm).get_entity("contact", "Smith")

    assert result["id"] == GUID
    assert "No exact match" in result["note"]
    assert len(result["candidates"]) == 2


@pytest.mark.asyncio
async def test_no_candidates_is_an_error_result(crm):
    result = await EntityResolver(crm).get_entity("reviewer", "Nobody Here")

    assert result == {"error": 'No reviewer found matching "Nobody Here"'}


@pytest.mark.asyncio
async def test_account_alias_hits_are_merged(crm):
    crm.query_handler = lambda entity_set, **kw: {"records": []}
    crm.search_result = {"results": [
        {"entity": "account", "objectId": GUID, "score": 10.0},
        {"entity": "account", "objectId": OTHER_GUID, "score": 5.0},
    ]}
    crm.records[GUID] = {"accountid": GUID, "name": "California Institute of Technology", "akoya_aka": "Caltech"}

    result = await EntityResolver(crm).get_entity("account", "Caltech")

    assert result["id"] == GUID
    assert "note" not in result
    # low-scoring hit below 80% of the top score is not fetched
    assert [c for c in crm.calls if c[0] == "get_record"] == [("get_record", "accounts", {"id": GUID})]


@pytest.mark.asyncio
async def test_alias_search_failure_falls_back_to_direct_lookup(crm):
    crm.query_handler = lambda entity_set, **kw: {"records": [{"accountid": GUID, "name": "Caltech"}]}
    crm.search_result = CrmQueryError("search unavailable", status_code=503)

    result = await EntityResolver(crm).get_entity("account", "Caltech")

    assert result["id"] == GUID


@pytest.mark.asyncio
async def test_stale_alias_hit_is_skipped(crm):
    crm.query_handler = lambda entity_set, **kw: {"records": [{"accountid": GUID, "name": "Foo University"}]}
    crm.search_result = {"results": [{"entity": "account", "objectId": OTHER_GUID, "score": 9.0}]}

    result = await EntityResolver(crm).get_entity("account", "Foo")

    assert result["id"] == GUID
    assert ("get_record", "accounts", {"id": OTHER_GUID}) in crm.calls


@pytest.mark.asyncio
async def test_unknown_type_raises(crm):
    with pytest.raises(ToolInputError, match="Unknown entity type"):
        await EntityResolver(crm).get_entity("grant", "1001585")
