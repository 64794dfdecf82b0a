"""
Report Renderers

The queue hands each PROCESSING job to a ``Renderer`` and stores whatever bytes it
returns. ``TabularReportRenderer`` is the bundled implementation: it asks a data
provider for the report rows and writes them as CSV (pandas), XLSX (pandas with
the openpyxl engine) or PDF (reportlab).

Renderers signal retryability by raising ``TransientProcessingError`` or
``FatalProcessingError``.
"""

import abc
import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import pandas as pd
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from reportlab.lib import colors
from reportlab.lib.pagesizes import A3, A4, landscape, legal, letter, portrait
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from report_exports.errors import FatalProcessingError
from report_exports.jobs.job_types import FILE_EXTENSIONS, MIME_TYPES, ExportFormat, ExportJob

logger = logging.getLogger(__name__)

Rows = List[Dict[str, Any]]
ReportDataProvider = Callable[[ExportJob], Union[Rows, Awaitable[Rows]]]

PAGE_SIZES = {"A4": A4, "A3": A3, "Letter": letter, "Legal": legal}
CSV_ENCODINGS = {"utf8": "utf-8", "latin1": "latin-1", "ascii": "ascii"}


@dataclass
class RenderedFile:
    """
    Output of a renderer. Either ``content`` holds the bytes, or ``file_path``
    points at a temporary file the queue reads and then removes.
    """
    file_name: str
    mime_type: str
    content: Optional[bytes] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None

    def __post_init__(self):
        if self.content is None and self.file_path is None:
            raise ValueError("RenderedFile needs either content or file_path")
        if self.file_size is None and self.content is not None:
            self.file_size = len(self.content)


class Renderer(abc.ABC):
    """Turns a job's template, format, parameters and options into a file."""

    @abc.abstractmethod
    async def generate_file(self, job: ExportJob) -> RenderedFile: ...


def rows_from_parameters(job: ExportJob) -> Rows:
    """Default data provider: rows passed inline as ``parameters["rows"]``."""
    rows = job.parameters.get("rows", [])
    if not isinstance(rows, list):
        raise FatalProcessingError("parameters.rows must be a list of records")
    return rows


def _cell_text(value: Any) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    return str(value)


class TabularReportRenderer(Renderer):
    """
    Renders a flat table of records in any supported export format.

    File building is CPU-bound, so it runs on the default executor.
    """

    def __init__(self, data_provider: Optional[ReportDataProvider] = None):
        self.data_provider = data_provider or rows_from_parameters

    async def _load_rows(self, job: ExportJob) -> Rows:
        rows = self.data_provider(job)
        if asyncio.iscoroutine(rows) or isinstance(rows, asyncio.Future):
            rows = await rows
        return rows

    async def generate_file(self, job: ExportJob) -> RenderedFile:
        rows = await self._load_rows(job)
        frame = pd.DataFrame(rows)
        if frame.empty:
            frame = pd.DataFrame([{"message": "No data for the selected parameters"}])

        builders = {
            ExportFormat.CSV: self._build_csv,
            ExportFormat.EXCEL: self._build_excel,
            ExportFormat.PDF: self._build_pdf,
        }
        loop = asyncio.get_running_loop()
        content = await loop.run_in_executor(None, builders[job.format], job, frame)

        logger.info(f"Rendered {job.format.value} for job {job.id}: {len(frame)} rows, {len(content)} bytes")
        return RenderedFile(
            file_name=f"{job.template_id}_report.{FILE_EXTENSIONS[job.format]}",
            mime_type=MIME_TYPES[job.format][0],
            content=content,
        )

    @staticmethod
    def _title(job: ExportJob) -> str:
        return f"{job.template_id.replace('_', ' ').title()} Report"

    def _build_csv(self, job: ExportJob, frame: pd.DataFrame) -> bytes:
        encoding = CSV_ENCODINGS.get(job.options.get("encoding", "utf8"), "utf-8")
        separator = job.options.get("separator", ",")
        text = frame.to_csv(index=False, sep=separator)
        try:
            return text.encode(encoding)
        except UnicodeEncodeError as e:
            raise FatalProcessingError(f"Report data cannot be encoded as {encoding}: {e}") from e

    def _build_excel(self, job: ExportJob, frame: pd.DataFrame) -> bytes:
        output = io.BytesIO()
        sheet_name = self._title(job)[:31]
        with pd.ExcelWriter(output, engine="openpyxl") as writer:
            frame.to_excel(writer, sheet_name=sheet_name, index=False)
            sheet = writer.sheets[sheet_name]

            header_font = Font(bold=True)
            header_fill = PatternFill(start_color="D3D3D3", end_color="D3D3D3", fill_type="solid")
            for idx, column in enumerate(frame.columns, start=1):
                cell = sheet.cell(row=1, column=idx)
                cell.font = header_font
                cell.fill = header_fill
                width = max([len(str(column))] + [len(str(v)) for v in frame[column].tolist()])
                sheet.column_dimensions[get_column_letter(idx)].width = min(width + 2, 60)
        return output.getvalue()

    def _build_pdf(self, job: ExportJob, frame: pd.DataFrame) -> bytes:
        page = PAGE_SIZES.get(job.options.get("pageSize", "A4"), A4)
        page = landscape(page) if job.options.get("orientation") == "landscape" else portrait(page)

        buf = io.BytesIO()
        doc = SimpleDocTemplate(
            buf,
            pagesize=page,
            leftMargin=15 * mm,
            rightMargin=15 * mm,
            topMargin=18 * mm,
            bottomMargin=15 * mm,
            title=self._title(job),
        )
        styles = getSampleStyleSheet()
        story: list = [Paragraph(self._title(job), styles["Title"])]

        date_range = job.parameters.get("dateRange") or {}
        if date_range.get("from") or date_range.get("to"):
            period = f"Period: {date_range.get('from', '')} to {date_range.get('to', '')}"
            story.append(Paragraph(period, styles["Normal"]))
        story.append(Spacer(1, 8))

        data = [list(map(str, frame.columns))] + [
            [_cell_text(v) for v in row] for row in frame.itertuples(index=False)
        ]
        table = Table(data, repeatRows=1, hAlign="LEFT")
        table.setStyle(
            TableStyle(
                [
                    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                    ("FONTNAME", (0, 1), (-1, -1), "Helvetica"),
                    ("FONTSIZE", (0, 0), (-1, -1), 8),
                    ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
                    ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                    ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
                ]
            )
        )
        story.append(table)
        doc.build(story)
        return buf.getvalue()
