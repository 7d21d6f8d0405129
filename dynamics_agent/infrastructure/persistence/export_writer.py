from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
from pathlib import Path
from pydantic import BaseModel
import csv
import io
import re
import structlog

logger = structlog.get_logger(__name__)

EXPORT_URL_PREFIX = "/api/dynamics-explorer/exports"


class ExportFile(BaseModel):
    """A rendered export ready for download"""
    filename: str
    url: str
    row_count: int
    path: Optional[str] = None


def sanitize_filename(name: Optional[str], default: str) -> str:
    """Filesystem-safe base name with a .csv extension"""

    base = (name or "").strip()
    if base.lower().endswith(".csv"):
        base = base[:-4]
    base = re.sub(r"[^A-Za-z0-9_-]+", "_", base).strip("_")[:80] or default
    return f"{base}.csv"


def render_csv(columns: List[str], rows: List[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore", lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow({column: "" if row.get(column) is None else row.get(column) for column in columns})
    return buffer.getvalue()


class ExportWriter(ABC):
    """Destination for rendered export files"""

    @abstractmethod
    async def write(self, filename: str, columns: List[str], rows: List[Dict[str, Any]]) -> ExportFile:
        pass

    def resolve(self, filename: str) -> Optional[Path]:
        """Local path of a previously written file, if the writer keeps one"""
        return None


class CsvExportWriter(ExportWriter):
    """Writes CSV files into a local directory"""

    def __init__(self, export_dir: str):
        self.export_dir = Path(export_dir)

    async def write(self, filename: str, columns: List[str], rows: List[Dict[str, Any]]) -> ExportFile:
        self.export_dir.mkdir(parents=True, exist_ok=True)
        path = self.export_dir / filename
        # utf-8-sig so spreadsheet apps detect the encoding
        path.write_text(render_csv(columns, rows), encoding="utf-8-sig")

        logger.info("Export written", filename=filename, rows=len(rows), columns=len(columns))
        return ExportFile(
            filename=filename,
            url=f"{EXPORT_URL_PREFIX}/{filename}",
            row_count=len(rows),
            path=str(path)
        )

    def resolve(self, filename: str) -> Optional[Path]:
        if Path(filename).name != filename:
            return None
        path = self.export_dir / filename
        return path if path.is_file() else None


class InMemoryExportWriter(ExportWriter):
    """Keeps rendered files in memory; used where no export directory is wanted"""

    def __init__(self):
        self.files: Dict[str, str] = {}

    async def write(self, filename: str, columns: List[str], rows: List[Dict[str, Any]]) -> ExportFile:
        self.files[filename] = render_csv(columns, rows)
        return ExportFile(filename=filename, url=f"{EXPORT_URL_PREFIX}/{filename}", row_count=len(rows))
