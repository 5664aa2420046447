"""Tabular file writers shared by dashboard exports and report downloads.

Each writer returns the file as bytes. Excel files are built with
openpyxl, PDFs with fpdf2 core fonts (latin-1 only, so other characters
are replaced).
"""

from __future__ import annotations

import csv
import io
from collections.abc import Sequence
from typing import Any

from fpdf import FPDF
from fpdf.enums import XPos, YPos
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

CSV_MEDIA_TYPE = "text/csv"
EXCEL_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
PDF_MEDIA_TYPE = "application/pdf"
JSON_MEDIA_TYPE = "application/json"
SVG_MEDIA_TYPE = "image/svg+xml"

HEADER_FONT = Font(bold=True, color="FFFFFF")
HEADER_FILL = PatternFill(fill_type="solid", start_color="1F4E79", end_color="1F4E79")

PAGE_SIZES: dict[str, Any] = {
    "a4": "A4",
    "letter": "Letter",
    "legal": "Legal",
    "tabloid": (279.4, 431.8),
}

Sheet = tuple[str, Sequence[str], Sequence[Sequence[Any]]]


def csv_bytes(headers: Sequence[str], rows: Sequence[Sequence[Any]]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def excel_bytes(sheets: Sequence[Sheet]) -> bytes:
    """Workbook with one sheet per (title, headers, rows); header rows are styled."""
    workbook = Workbook()
    workbook.remove(workbook.active)
    for title, headers, rows in sheets:
        sheet = workbook.create_sheet(title=title[:31])
        sheet.append(list(headers))
        for cell in sheet[1]:
            cell.font = HEADER_FONT
            cell.fill = HEADER_FILL
            cell.alignment = Alignment(horizontal="center")
        for row in rows:
            sheet.append(list(row))
        for index, header in enumerate(headers, start=1):
            width = max([len(str(header))] + [len(str(r[index - 1])) for r in rows if len(r) >= index])
            sheet.column_dimensions[get_column_letter(index)].width = min(width + 2, 50)
        sheet.freeze_panes = "A2"
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def _latin1(value: Any) -> str:
    return str(value).encode("latin-1", "replace").decode("latin-1")


def pdf_bytes(
    title: str,
    headers: Sequence[str],
    rows: Sequence[Sequence[Any]],
    summary: Sequence[str] = (),
    notes: Sequence[str] = (),
    orientation: str = "portrait",
    page_size: str = "a4",
    footer: str | None = None,
) -> bytes:
    """Title, summary lines, a bordered table and trailing notes."""
    pdf = FPDF(orientation="L" if orientation == "landscape" else "P", unit="mm", format=PAGE_SIZES.get(page_size, "A4"))
    pdf.set_auto_page_break(auto=True, margin=15)
    pdf.add_page()

    pdf.set_font("Helvetica", style="B", size=16)
    pdf.cell(0, 10, _latin1(title), new_x=XPos.LMARGIN, new_y=YPos.NEXT, align="C")
    pdf.ln(2)

    pdf.set_font("Helvetica", size=10)
    for line in summary:
        pdf.cell(0, 6, _latin1(line), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    if summary:
        pdf.ln(4)

    if headers:
        col_width = pdf.epw / len(headers)
        pdf.set_font("Helvetica", style="B", size=9)
        pdf.set_fill_color(31, 78, 121)
        pdf.set_text_color(255, 255, 255)
        for header in headers:
            pdf.cell(col_width, 7, _latin1(header), border=1, align="C", fill=True)
        pdf.ln()
        pdf.set_font("Helvetica", size=8)
        pdf.set_text_color(0, 0, 0)
        for row in rows:
            for value in row:
                pdf.cell(col_width, 6, _latin1(value)[:40], border=1)
            pdf.ln()

    if notes:
        pdf.ln(4)
        pdf.set_font("Helvetica", style="B", size=11)
        pdf.cell(0, 7, "Insights", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        pdf.set_font("Helvetica", size=10)
        for note in notes:
            pdf.multi_cell(0, 6, _latin1(f"- {note}"), new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    if footer:
        pdf.ln(6)
        pdf.set_font("Helvetica", style="I", size=8)
        pdf.cell(0, 6, _latin1(footer), new_x=XPos.LMARGIN, new_y=YPos.NEXT, align="C")

    return bytes(pdf.output())
