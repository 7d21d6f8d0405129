from typing import Dict, Any, List, Optional, Tuple
from datetime import datetime, timezone
import asyncio
import json
import math
import re
import time
import structlog

from dynamics_agent.domain.errors import ToolInputError
from dynamics_agent.domain.tool.result_shaper import dumps, strip_empty
from dynamics_agent.infrastructure.config import Settings, get_settings
from dynamics_agent.infrastructure.llm.anthropic_client import response_text
from dynamics_agent.infrastructure.llm.pricing import estimate_cost_usd
from dynamics_agent.infrastructure.observability.logging import metrics
from dynamics_agent.infrastructure.persistence.export_writer import ExportWriter, sanitize_filename

logger = structlog.get_logger(__name__)

SAMPLE_SIZE = 3
MAX_DERIVED_COLUMNS = 10
PROCESSING_MAX_TOKENS = 4096

COLUMNS_SYSTEM = (
    "You design spreadsheet columns. Given a per-record task and sample CRM records, "
    "reply with JSON only: {\"columns\": [\"snake_case_name\", ...], \"sample\": [{...}, ...]} "
    "where sample holds the column values for each sample record, in order."
)
BATCH_SYSTEM = (
    "You process CRM records for a spreadsheet export. Reply with JSON only: an array with "
    "exactly one object per input record, in input order, using exactly the given column names."
)

JSON_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


def sanitize_select(select: Optional[str]) -> List[str]:
    """Export columns from $select, without display-only ``_formatted`` fields"""
    fields = [f.strip() for f in (select or "").split(",")]
    return [f for f in fields if f and not f.endswith("_formatted")]


def parse_json_reply(text: str) -> Any:
    """Decode a JSON model reply, tolerating a fenced code block"""
    return json.loads(JSON_FENCE.sub("", text.strip()))


def export_row(record: Dict[str, Any], columns: List[str]) -> Dict[str, Any]:
    """CSV row for a record, preferring display values over raw ids and codes"""
    return {column: record.get(f"{column}_formatted", record.get(column)) for column in columns}


class ExportService:
    """Runs export_csv: direct export, processing estimate, and confirmed batch processing"""

    def __init__(
        self,
        crm,
        writer: ExportWriter,
        model_client=None,
        settings: Optional[Settings] = None
    ):
        self.crm = crm
        self.writer = writer
        self.model_client = model_client
        self.settings = settings or get_settings()

    async def export(self, tool_input: Dict[str, Any], entity_set: str, sink=None) -> Dict[str, Any]:
        """Entry point for the export_csv tool"""

        table_name = tool_input.get("table_name")
        filter = (tool_input.get("filter") or "").strip()
        if not filter:
            raise ToolInputError("export_csv requires a filter; unfiltered exports are not allowed")
        columns = sanitize_select(tool_input.get("select"))
        if not columns:
            raise ToolInputError("export_csv requires select with at least one field")

        instruction = (tool_input.get("process_instruction") or "").strip()
        if instruction and not tool_input.get("confirmed"):
            return await self.estimate(entity_set, columns, filter, instruction)

        collected = await self.crm.query_all(
            entity_set,
            select=",".join(columns),
            filter=filter,
            orderby=tool_input.get("orderby"),
            max_records=self.settings.export_max_records
        )
        records = collected["records"]
        rows = [export_row(r, columns) for r in records]

        derived_columns: List[str] = []
        failed_batches = 0
        failed_records = 0
        if instruction and records:
            derived_columns = await self._infer_columns(records[:SAMPLE_SIZE], instruction)
            derived, failed_batches, failed_records = await self.process_all(
                records, derived_columns, instruction, sink
            )
            for row, values in zip(rows, derived):
                for column in derived_columns:
                    row[column] = values.get(column) if values else None

        default_name = f"{table_name or entity_set}_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}"
        filename = sanitize_filename(tool_input.get("filename"), default_name)
        export_file = await self.writer.write(filename, columns + derived_columns, rows)
        if sink is not None:
            sink.file_ready(export_file.filename, export_file.url, export_file.row_count)

        metrics.increment_counter("export.files")
        result: Dict[str, Any] = {
            "exported": len(rows),
            "totalMatched": collected.get("totalCount", len(rows)),
            "filename": export_file.filename,
            "url": export_file.url,
        }
        if collected.get("capped"):
            result["note"] = (
                f"Export capped at {self.settings.export_max_records} records. "
                "Narrow the filter to export the rest."
            )
        if derived_columns:
            result["derivedColumns"] = derived_columns
            result["failedBatches"] = failed_batches
            result["failedRecords"] = failed_records
        return result

    async def estimate(self, entity_set: str, columns: List[str], filter: str, instruction: str) -> Dict[str, Any]:
        """Dry run: count matches, infer columns from a sample, price the full run"""

        record_count = await self.crm.count_records(entity_set, filter=filter)
        record_count = min(record_count, self.settings.export_max_records)
        sample_result = await self.crm.query_records(
            entity_set, select=",".join(columns), filter=filter, top=SAMPLE_SIZE
        )
        sample_records = sample_result["records"]
        if not sample_records:
            return {"status": "estimate", "recordCount": 0, "message": "No records match this filter."}

        started = time.monotonic()
        response = await self._complete(COLUMNS_SYSTEM, self._columns_prompt(sample_records, instruction))
        elapsed = time.monotonic() - started

        reply = parse_json_reply(response_text(response))
        derived_columns = self._clean_columns(reply.get("columns") if isinstance(reply, dict) else None)
        sample_values = reply.get("sample") if isinstance(reply, dict) else None

        usage = response.get("usage") or {}
        per_record_in = (usage.get("input_tokens") or 0) / len(sample_records)
        per_record_out = (usage.get("output_tokens") or 0) / len(sample_records)
        cost = estimate_cost_usd(
            response.get("model") or self.settings.model,
            int(per_record_in * record_count),
            int(per_record_out * record_count)
        )

        batches = math.ceil(record_count / self.settings.export_batch_size)
        waves = math.ceil(batches / max(1, self.settings.export_concurrency))

        sample = []
        for i, record in enumerate(sample_records):
            row = export_row(record, columns)
            values = sample_values[i] if isinstance(sample_values, list) and i < len(sample_values) else {}
            for column in derived_columns:
                row[column] = values.get(column) if isinstance(values, dict) else None
            sample.append(strip_empty(row))

        logger.info(
            "Export estimate",
            entity_set=entity_set,
            record_count=record_count,
            derived_columns=derived_columns,
            estimated_cost_usd=cost
        )
        return {
            "status": "estimate",
            "recordCount": record_count,
            "derivedColumns": derived_columns,
            "sample": sample,
            "estimatedCostUsd": round(cost, 4) if cost is not None else None,
            "estimatedMinutes": round(max(elapsed * waves, 1.0) / 60, 1),
            "message": "Show this estimate to the user and call export_csv again with confirmed: true if they approve.",
        }

    async def process_all(
        self,
        records: List[Dict[str, Any]],
        derived_columns: List[str],
        instruction: str,
        sink=None
    ) -> Tuple[List[Optional[Dict[str, Any]]], int, int]:
        """Run every batch with bounded concurrency; results stay in record order"""

        size = self.settings.export_batch_size
        batches = [records[i:i + size] for i in range(0, len(records), size)]
        semaphore = asyncio.Semaphore(max(1, self.settings.export_concurrency))
        progress = {"processed": 0, "failed": 0}

        async def run(index: int, batch: List[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
            async with semaphore:
                try:
                    values = await self._process_batch(batch, derived_columns, instruction)
                except Exception as e:
                    logger.warning("Export batch failed", batch=index, size=len(batch), error=str(e))
                    metrics.increment_counter("export.batch_failed")
                    values = None
                    progress["failed"] += len(batch)
                progress["processed"] += len(batch)
                if sink is not None:
                    sink.export_progress(progress["processed"], len(records), progress["failed"])
                return values

        outcomes = await asyncio.gather(*(run(i, batch) for i, batch in enumerate(batches)))

        derived: List[Optional[Dict[str, Any]]] = []
        failed_batches = 0
        for batch, values in zip(batches, outcomes):
            if values is None:
                failed_batches += 1
                derived.extend([None] * len(batch))
            else:
                derived.extend(values)
        return derived, failed_batches, progress["failed"]

    async def _process_batch(
        self,
        batch: List[Dict[str, Any]],
        derived_columns: List[str],
        instruction: str
    ) -> List[Dict[str, Any]]:
        prompt = (
            f"Task: {instruction}\n"
            f"Columns: {', '.join(derived_columns)}\n"
            f"Records ({len(batch)}):\n{dumps([strip_empty(r) for r in batch])}"
        )
        reply = parse_json_reply(response_text(await self._complete(BATCH_SYSTEM, prompt)))
        if not isinstance(reply, list) or len(reply) != len(batch):
            raise ValueError(f"expected {len(batch)} results, got {len(reply) if isinstance(reply, list) else 'non-list'}")
        return [
            {column: item.get(column) for column in derived_columns} if isinstance(item, dict) else {}
            for item in reply
        ]

    async def _infer_columns(self, sample: List[Dict[str, Any]], instruction: str) -> List[str]:
        reply = parse_json_reply(response_text(
            await self._complete(COLUMNS_SYSTEM, self._columns_prompt(sample, instruction))
        ))
        columns = self._clean_columns(reply.get("columns") if isinstance(reply, dict) else None)
        if not columns:
            raise ToolInputError("Could not derive output columns from process_instruction")
        return columns

    def _columns_prompt(self, sample: List[Dict[str, Any]], instruction: str) -> str:
        return f"Task per record: {instruction}\nSample records:\n{dumps([strip_empty(r) for r in sample])}"

    def _clean_columns(self, columns: Any) -> List[str]:
        if not isinstance(columns, list):
            return []
        cleaned = []
        for column in columns[:MAX_DERIVED_COLUMNS]:
            name = re.sub(r"[^a-z0-9_]+", "_", str(column).strip().lower()).strip("_")
            if name and name not in cleaned:
                cleaned.append(name)
        return cleaned

    async def _complete(self, system: str, prompt: str) -> Dict[str, Any]:
        if self.model_client is None:
            raise ToolInputError("Record processing is not available")
        return await self.model_client.complete(
            system, [{"role": "user", "content": prompt}], max_tokens=PROCESSING_MAX_TOKENS
        )
