import json
import re

import pytest

from dynamics_agent.domain.errors import ToolInputError
from dynamics_agent.domain.tool.export import ExportService, parse_json_reply, sanitize_select
from dynamics_agent.infrastructure.persistence.export_writer import (
    CsvExportWriter, InMemoryExportWriter, render_csv, sanitize_filename
)
from tests.conftest import ScriptedModelClient, completion, drain


def _requests(n):
    return [
        {"akoya_requestnum": f"10015{i:02d}", "akoya_title": f"T{i}",
         "akoya_requeststatus": 1, "akoya_requeststatus_formatted": "Active"}
        for i in range(1, n + 1)
    ]


def _batch_reply(system, messages):
    titles = re.findall(r"T\d", messages[0]["content"])
    if "T3" in titles:
        return completion("[]")
    return completion(json.dumps([{"score": title.lower()} for title in titles]))


class TestHelpers:
    def test_sanitize_select_drops_formatted_fields(self):
        assert sanitize_select(" name, akoya_requeststatus_formatted ,,akoya_title") == ["name", "akoya_title"]

    def test_parse_json_reply_accepts_fenced_block(self):
        assert parse_json_reply('```json\n{"columns": ["a"]}\n```') == {"columns": ["a"]}

    def test_sanitize_filename(self):
        assert sanitize_filename("Q1 grants.csv", "default") == "Q1_grants.csv"
        assert sanitize_filename("../../etc/passwd", "default") == "etc_passwd.csv"
        assert sanitize_filename(None, "akoya_requests_20260101") == "akoya_requests_20260101.csv"

    def test_render_csv_blanks_missing_values(self):
        out = render_csv(["a", "b"], [{"a": 1, "b": None}, {"a": "x,y"}])
        assert out == 'a,b\n1,\n"x,y",\n'


class TestExportWriter:
    @pytest.mark.asyncio
    async def test_csv_writer_writes_and_resolves(self, tmp_path):
        writer = CsvExportWriter(str(tmp_path / "exports"))

        export_file = await writer.write("grants.csv", ["name"], [{"name": "Zürich"}])

        assert export_file.url == "/api/dynamics-explorer/exports/grants.csv"
        assert writer.resolve("grants.csv").read_text(encoding="utf-8-sig") == "name\nZürich\n"
        assert writer.resolve("../grants.csv") is None
        assert writer.resolve("missing.csv") is None


class TestExportService:
    @pytest.mark.asyncio
    async def test_filter_is_required(self, crm, settings):
        service = ExportService(crm, InMemoryExportWriter(), settings=settings)

        with pytest.raises(ToolInputError, match="requires a filter"):
            await service.export({"table_name": "akoya_request", "select": "akoya_title"}, "akoya_requests")
        assert crm.calls == []

    @pytest.mark.asyncio
    async def test_select_is_required(self, crm, settings):
        service = ExportService(crm, InMemoryExportWriter(), settings=settings)

        with pytest.raises(ToolInputError, match="requires select"):
            await service.export({"table_name": "akoya_request", "filter": "statecode eq 0"}, "akoya_requests")

    @pytest.mark.asyncio
    async def test_direct_export_writes_file_and_announces_it(self, crm, settings, sink):
        crm.all_records = _requests(3)
        writer = CsvExportWriter(settings.export_dir)
        service = ExportService(crm, writer, settings=settings)

        result = await service.export({
            "table_name": "akoya_request",
            "filter": "akoya_fiscalyear eq 'June 2025'",
            "select": "akoya_requestnum,akoya_requeststatus",
            "filename": "june-cycle",
        }, "akoya_requests", sink)

        assert result == {
            "exported": 3,
            "totalMatched": 3,
            "filename": "june-cycle.csv",
            "url": "/api/dynamics-explorer/exports/june-cycle.csv",
        }
        content = writer.resolve("june-cycle.csv").read_text(encoding="utf-8-sig")
        assert content.splitlines() == [
            "akoya_requestnum,akoya_requeststatus",
            "1001501,Active",
            "1001502,Active",
            "1001503,Active",
        ]
        assert drain(sink) == [("file_ready", {
            "filename": "june-cycle.csv", "url": "/api/dynamics-explorer/exports/june-cycle.csv", "rowCount": 3,
        })]

    @pytest.mark.asyncio
    async def test_capped_export_adds_note(self, crm, settings):
        crm.all_records = _requests(5)
        settings = settings.model_copy(update={"export_max_records": 2})
        service = ExportService(crm, InMemoryExportWriter(), settings=settings)

        result = await service.export(
            {"table_name": "akoya_request", "filter": "statecode eq 0", "select": "akoya_title"}, "akoya_requests"
        )

        assert result["exported"] == 2
        assert result["totalMatched"] == 5
        assert "capped at 2 records" in result["note"]

    @pytest.mark.asyncio
    async def test_unconfirmed_processing_returns_estimate(self, crm, settings):
        crm.counts["akoya_requests"] = 120
        crm.query_handler = lambda entity_set, **kw: {"records": _requests(2)}
        reply = '```json\n{"columns": ["Topic Area"], "sample": [{"topic_area": "Biology"}, {"topic_area": "Physics"}]}\n```'
        model = ScriptedModelClient(completions=[completion(reply)])
        writer = InMemoryExportWriter()
        service = ExportService(crm, writer, model_client=model, settings=settings)

        result = await service.export({
            "table_name": "akoya_request",
            "filter": "statecode eq 0",
            "select": "akoya_requestnum,akoya_title",
            "process_instruction": "Classify the topic area of each title",
        }, "akoya_requests")

        assert result["status"] == "estimate"
        assert result["recordCount"] == 120
        assert result["derivedColumns"] == ["topic_area"]
        assert result["sample"] == [
            {"akoya_requestnum": "1001501", "akoya_title": "T1", "topic_area": "Biology"},
            {"akoya_requestnum": "1001502", "akoya_title": "T2", "topic_area": "Physics"},
        ]
        # 150 input and 45 output tokens per record, at Sonnet prices
        assert result["estimatedCostUsd"] == pytest.approx(0.135)
        assert "confirmed: true" in result["message"]
        assert writer.files == {}
        assert crm.calls[1][2]["top"] == 3

    @pytest.mark.asyncio
    async def test_confirmed_processing_counts_failed_batches(self, crm, settings, sink):
        crm.all_records = _requests(5)
        settings = settings.model_copy(update={"export_batch_size": 2, "export_concurrency": 1})
        model = ScriptedModelClient(completions=[
            completion('{"columns": ["score"], "sample": []}'),
            _batch_reply, _batch_reply, _batch_reply,
        ])
        writer = InMemoryExportWriter()
        service = ExportService(crm, writer, model_client=model, settings=settings)

        result = await service.export({
            "table_name": "akoya_request",
            "filter": "statecode eq 0",
            "select": "akoya_requestnum,akoya_title",
            "process_instruction": "Score each title",
            "confirmed": True,
            "filename": "scored",
        }, "akoya_requests", sink)

        assert result["exported"] == 5
        assert result["derivedColumns"] == ["score"]
        assert result["failedBatches"] == 1
        assert result["failedRecords"] == 2
        assert writer.files["scored.csv"].splitlines() == [
            "akoya_requestnum,akoya_title,score",
            "1001501,T1,t1",
            "1001502,T2,t2",
            "1001503,T3,",
            "1001504,T4,",
            "1001505,T5,t5",
        ]
        events = drain(sink)
        assert [data for event, data in events if event == "export_progress"] == [
            {"processed": 2, "total": 5, "failed": 0},
            {"processed": 4, "total": 5, "failed": 2},
            {"processed": 5, "total": 5, "failed": 2},
        ]
        assert events[-1][0] == "file_ready"

    @pytest.mark.asyncio
    async def test_processing_without_model_client(self, crm, settings):
        crm.all_records = _requests(1)
        service = ExportService(crm, InMemoryExportWriter(), settings=settings)

        with pytest.raises(ToolInputError, match="not available"):
            await service.export({
                "table_name": "akoya_request", "filter": "statecode eq 0", "select": "akoya_title",
                "process_instruction": "Summarize", "confirmed": True,
            }, "akoya_requests")
