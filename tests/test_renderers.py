"""
Tests for the bundled tabular renderer (CSV via pandas, XLSX via openpyxl,
PDF via reportlab).

Run with: python -m pytest tests/test_renderers.py -v
"""

import io

import openpyxl
import pytest

from report_exports.errors import FatalProcessingError
from report_exports.jobs.job_types import ExportFormat, ExportJob
from report_exports.renderers import RenderedFile, TabularReportRenderer, rows_from_parameters

ROWS = [
    {"animal": "A-1", "weight": 420, "status": "healthy"},
    {"animal": "A-2", "weight": 398, "status": "treated"},
]


def _job(fmt: ExportFormat, rows=None, **options) -> ExportJob:
    parameters = {"rows": ROWS if rows is None else rows}
    return ExportJob(user_id=1, template_id="health", format=fmt, parameters=parameters, options=options)


class TestRenderedFile:

    def test_requires_content_or_path(self):
        with pytest.raises(ValueError):
            RenderedFile(file_name="x.csv", mime_type="text/csv")

    def test_size_from_content(self):
        assert RenderedFile(file_name="x.csv", mime_type="text/csv", content=b"abc").file_size == 3


class TestTabularReportRenderer:

    @pytest.mark.asyncio
    async def test_csv(self):
        rendered = await TabularReportRenderer().generate_file(_job(ExportFormat.CSV))

        assert rendered.mime_type == "text/csv"
        assert rendered.file_name == "health_report.csv"
        lines = rendered.content.decode("utf-8").splitlines()
        assert lines[0] == "animal,weight,status"
        assert lines[1] == "A-1,420,healthy"

    @pytest.mark.asyncio
    async def test_csv_separator_and_encoding(self):
        rows = [{"name": "Zoë", "count": 1}]
        rendered = await TabularReportRenderer().generate_file(
            _job(ExportFormat.CSV, rows=rows, separator=";", encoding="latin1")
        )

        assert rendered.content.decode("latin-1").splitlines() == ["name;count", "Zoë;1"]

    @pytest.mark.asyncio
    async def test_csv_unencodable_data_is_fatal(self):
        rows = [{"name": "Zoë"}]

        with pytest.raises(FatalProcessingError):
            await TabularReportRenderer().generate_file(_job(ExportFormat.CSV, rows=rows, encoding="ascii"))

    @pytest.mark.asyncio
    async def test_excel(self):
        rendered = await TabularReportRenderer().generate_file(_job(ExportFormat.EXCEL))

        assert rendered.content.startswith(b"PK\x03\x04")
        assert rendered.file_name.endswith(".xlsx")
        workbook = openpyxl.load_workbook(io.BytesIO(rendered.content))
        sheet = workbook.active
        assert sheet.title == "Health Report"
        assert [c.value for c in sheet[1]] == ["animal", "weight", "status"]
        assert sheet["A1"].font.bold is True
        assert sheet["B3"].value == 398

    @pytest.mark.asyncio
    async def test_pdf(self):
        job = _job(ExportFormat.PDF, pageSize="Letter", orientation="landscape")
        job.parameters["dateRange"] = {"from": "2024-01-01", "to": "2024-01-31"}

        rendered = await TabularReportRenderer().generate_file(job)

        assert rendered.mime_type == "application/pdf"
        assert rendered.content.startswith(b"%PDF")

    @pytest.mark.asyncio
    async def test_empty_data_still_renders(self):
        rendered = await TabularReportRenderer().generate_file(_job(ExportFormat.CSV, rows=[]))

        assert "No data for the selected parameters" in rendered.content.decode("utf-8")

    @pytest.mark.asyncio
    async def test_async_data_provider(self):
        async def provider(job):
            return [{"template": job.template_id}]

        rendered = await TabularReportRenderer(provider).generate_file(_job(ExportFormat.CSV))

        assert rendered.content.decode("utf-8").splitlines() == ["template", "health"]

    def test_rows_must_be_a_list(self):
        with pytest.raises(FatalProcessingError):
            rows_from_parameters(_job(ExportFormat.CSV, rows={"not": "a list"}))
