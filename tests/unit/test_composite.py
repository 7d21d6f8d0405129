import pytest

from dynamics_agent.domain.errors import ToolInputError
from dynamics_agent.domain.tool.composite import REPORTS_HEADER, find_reports_due, search_records


def _report(num, due, report_type="Interim Report", detail=None, request="1001585", org="Caltech"):
    record = {
        "akoya_paymentnum": num,
        "akoya_requirementdue_formatted": due,
        "akoya_requirementtype_formatted": report_type,
        "_akoya_requestlookup_value_formatted": request,
        "_akoya_requestapplicant_value_formatted": org,
        "statecode_formatted": "Active",
    }
    if detail:
        record["wmkf_reporttype_formatted"] = detail
    return record


class TestFindReportsDue:
    @pytest.mark.asyncio
    async def test_lines_and_counts_by_date(self, crm):
        crm.query_handler = lambda entity_set, **kw: {"records": [
            _report("R-1", "2/3/2026", detail="Year 1"),
            _report("R-2", "2/3/2026", report_type="Final Report", org="MIT", request="1001600"),
            _report("R-3", "2/17/2026"),
        ], "totalCount": 3}

        result = await find_reports_due(crm, "2026-02-01", "2026-03-01")

        _, entity_set, params = crm.calls[0]
        assert entity_set == "akoya_requestpayments"
        assert params["filter"] == (
            "akoya_type eq true and akoya_requirementdue ge 2026-02-01 and akoya_requirementdue lt 2026-03-01"
        )
        assert result["reportCount"] == 3
        assert result["hasMore"] is False
        assert result["byDate"] == "2/3/2026: 2, 2/17/2026: 1"
        assert result["header"] == REPORTS_HEADER
        assert result["reports"].split("\n") == [
            "R-1 | 2/3/2026 | Interim Report - Year 1 | Req 1001585 | Caltech | Active",
            "R-2 | 2/3/2026 | Final Report | Req 1001600 | MIT | Active",
            "R-3 | 2/17/2026 | Interim Report | Req 1001585 | Caltech | Active",
        ]

    @pytest.mark.asyncio
    async def test_more_matches_than_returned(self, crm):
        crm.query_handler = lambda entity_set, **kw: {"records": [_report("R-1", "2/3/2026")], "totalCount": 240}

        result = await find_reports_due(crm, "2026-01-01", "2027-01-01")

        assert result["totalCount"] == 240
        assert result["hasMore"] is True

    @pytest.mark.asyncio
    async def test_empty_window(self, crm):
        result = await find_reports_due(crm, "2026-02-01T00:00:00Z", "2026-03-01T00:00:00Z")

        assert result == {"reportCount": 0, "totalCount": 0, "message": "No reports due in this date range."}

    @pytest.mark.asyncio
    async def test_invalid_date(self, crm):
        with pytest.raises(ToolInputError, match="Invalid date"):
            await find_reports_due(crm, "February", "2026-03-01")
        assert crm.calls == []


class TestSearchRecords:
    @pytest.mark.asyncio
    async def test_hits_grouped_by_table_with_bold_highlights(self, crm):
        crm.search_result = {
            "totalCount": 3,
            "results": [
                {"entity": "akoya_request", "objectId": "r-1",
                 "attributes": {"akoya_requestnum": "1001585", "akoya_applicantidname": "Caltech",
                                "akoya_title": "Cryo-EM of fungal membranes"},
                 "highlights": {"akoya_title": ["Cryo-EM of {crmhit}fungal{/crmhit} membranes"]}},
                {"entity": "contact", "objectId": "c-1",
                 "attributes": {"fullname": "Ada Lovelace", "jobtitle": "Professor", "emailaddress1": "ada@uni.edu"}},
                {"entity": "akoya_request", "objectId": "r-2",
                 "attributes": {"akoya_requestnum": "1001601", "akoya_title": "Fungal genomics"}},
            ],
        }

        result = await search_records(crm, "fungal", entities=["akoya_request", "contact"], top=10)

        assert crm.calls[0][2] == {"search": "fungal", "entities": ["akoya_request", "contact"], "top": 10}
        assert result["totalCount"] == 3
        assert result["query"] == "fungal"
        sections = result["results"].split("\n\n")
        assert sections[0].startswith("[akoya_request] (2 results)\n")
        assert "Req 1001585 | Caltech | Cryo-EM of fungal membranes\n  ID: r-1\n  akoya_title: Cryo-EM of **fungal** membranes" in sections[0]
        assert sections[1] == "[contact] (1 results)\nAda Lovelace | Professor | ada@uni.edu\n  ID: c-1"

    @pytest.mark.asyncio
    async def test_hits_from_excluded_tables_are_dropped(self, crm):
        crm.search_result = {"totalCount": 2, "results": [
            {"entity": "wmkf_donors", "objectId": "d-1", "attributes": {"wmkf_name": "Secret donor"}},
            {"entity": "account", "objectId": "a-1", "attributes": {"name": "Caltech", "address1_city": "Pasadena",
                                                                    "address1_stateorprovince": "CA"}},
        ]}

        result = await search_records(crm, "caltech", excluded_tables={"wmkf_donors"})

        assert result["totalCount"] == 1
        assert "Secret donor" not in result["results"]
        assert "Caltech | Pasadena, CA" in result["results"]

    @pytest.mark.asyncio
    async def test_no_results(self, crm):
        result = await search_records(crm, "zzyzx")

        assert result == {"totalCount": 0, "query": "zzyzx", "message": "No results found."}
        assert crm.calls[0][2]["top"] == 20

    @pytest.mark.asyncio
    async def test_blank_search_raises(self, crm):
        with pytest.raises(ToolInputError):
            await search_records(crm, "   ")
