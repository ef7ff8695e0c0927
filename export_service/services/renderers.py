"""CSV and PDF renderers for export rows."""

from __future__ import annotations

import io
from typing import Iterable, List, Mapping, Optional, Sequence

from reportlab.lib.pagesizes import letter
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from ..config import (
    PDF_CELL_CHAR_LIMIT,
    PDF_HEADER_HEIGHT,
    PDF_MARGIN,
    PDF_ROW_HEIGHT,
    PDF_TITLE_GAP,
)

ELLIPSIS = "…"


def escape_csv_cell(value: object) -> str:
    text = "" if value is None else str(value)
    return '"' + text.replace('"', '""') + '"'


def csv_header_line(headers: Sequence[str]) -> str:
    return ",".join(headers)


def csv_row_line(headers: Sequence[str], row: Mapping[str, str]) -> str:
    return ",".join(escape_csv_cell(row.get(header, "")) for header in headers)


def render_csv(headers: Sequence[str], rows: Iterable[Mapping[str, str]]) -> str:
    """Render a complete CSV document (no trailing newline)."""
    lines = [csv_header_line(headers)]
    lines.extend(csv_row_line(headers, row) for row in rows)
    return "\n".join(lines)


class CsvStreamWriter:
    """Emit CSV text batch by batch, writing the header line only once."""

    def __init__(self, headers: Sequence[str]) -> None:
        self.headers = list(headers)
        self.header_written = False

    def header(self) -> str:
        if self.header_written:
            return ""
        self.header_written = True
        return csv_header_line(self.headers) + "\n"

    def write_batch(self, rows: Iterable[Mapping[str, str]]) -> str:
        parts: List[str] = [self.header()]
        parts.extend(csv_row_line(self.headers, row) + "\n" for row in rows)
        return "".join(parts)


def truncate_cell(text: str, limit: int = PDF_CELL_CHAR_LIMIT) -> str:
    if len(text) > limit:
        return text[: limit - 3] + ELLIPSIS
    return text


def fit_to_width(text: str, font: str, size: float, max_width: float) -> str:
    if stringWidth(text, font, size) <= max_width:
        return text
    trimmed = text.rstrip(ELLIPSIS)
    while trimmed and stringWidth(trimmed + ELLIPSIS, font, size) > max_width:
        trimmed = trimmed[:-1]
    return trimmed + ELLIPSIS if trimmed else ""


class PdfTableRenderer:
    """Paint a titled table onto Letter pages, breaking pages as rows overflow."""

    font = "Helvetica"
    bold_font = "Helvetica-Bold"

    def __init__(
        self,
        title: str,
        headers: Sequence[str],
        pagesize=letter,
        margin: float = PDF_MARGIN,
        row_height: float = PDF_ROW_HEIGHT,
        header_height: float = PDF_HEADER_HEIGHT,
    ) -> None:
        self.title = title
        self.headers = list(headers)
        self.pagesize = pagesize
        self.margin = margin
        self.row_height = row_height
        self.header_height = header_height
        page_width, self.page_height = pagesize
        usable_width = page_width - margin * 2
        self.col_width = usable_width / max(1, len(self.headers))
        self.page_count = 0
        self._canvas: Optional[canvas.Canvas] = None
        self._y = 0.0

    def _start_page(self) -> None:
        assert self._canvas is not None
        if self.page_count:
            self._canvas.showPage()
        self.page_count += 1
        self._y = self.page_height - self.margin

    def _draw_table_header(self, continuation: bool) -> None:
        c = self._canvas
        assert c is not None
        title = self.title + (" (cont.)" if continuation else "")
        c.setFont(self.bold_font, 14 if continuation else 16)
        c.drawString(self.margin, self._y, title)
        self._y -= PDF_TITLE_GAP
        c.setFont(self.bold_font, 10)
        for index, header in enumerate(self.headers):
            x = self.margin + index * self.col_width
            c.drawString(
                x, self._y, fit_to_width(header, self.bold_font, 10, self.col_width - 4)
            )
        self._y -= self.header_height - 6

    def _new_continuation_page(self) -> None:
        self._start_page()
        self._draw_table_header(True)

    def _draw_row(self, row: Sequence[str]) -> None:
        if self._y < self.margin + self.row_height:
            self._new_continuation_page()
        c = self._canvas
        assert c is not None
        c.setFont(self.font, 9)
        for index, cell in enumerate(row):
            x = self.margin + index * self.col_width
            text = truncate_cell(str(cell or ""))
            c.drawString(x, self._y, fit_to_width(text, self.font, 9, self.col_width - 4))
        self._y -= self.row_height

    def _draw_summary(self, summary: Mapping[str, str]) -> None:
        c = self._canvas
        assert c is not None
        if self._y < self.margin + 60:
            self._new_continuation_page()
        self._y -= 10
        c.setFont(self.bold_font, 14)
        c.drawString(self.margin, self._y, "Summary")
        self._y -= 20
        for key, value in summary.items():
            if self._y < self.margin + 24:
                self._new_continuation_page()
                c.setFont(self.bold_font, 14)
                c.drawString(self.margin, self._y, "Summary (cont.)")
                self._y -= 20
            c.setFont(self.font, 10)
            c.drawString(self.margin, self._y, f"{key}: {value}")
            self._y -= 14

    def render(
        self,
        rows: Iterable[Sequence[str]],
        summary: Optional[Mapping[str, str]] = None,
    ) -> bytes:
        buffer = io.BytesIO()
        self._canvas = canvas.Canvas(buffer, pagesize=self.pagesize)
        self._canvas.setTitle(self.title)
        self.page_count = 0
        self._start_page()
        self._draw_table_header(False)
        for row in rows:
            self._draw_row(row)
        if summary:
            self._draw_summary(summary)
        self._canvas.save()
        self._canvas = None
        return buffer.getvalue()


def render_pdf(
    title: str,
    headers: Sequence[str],
    rows: Iterable[Sequence[str]],
    summary: Optional[Mapping[str, str]] = None,
) -> bytes:
    return PdfTableRenderer(title, headers).render(rows, summary)


__all__ = [
    "CsvStreamWriter",
    "PdfTableRenderer",
    "csv_header_line",
    "escape_csv_cell",
    "fit_to_width",
    "render_csv",
    "render_pdf",
    "truncate_cell",
]
