"""Invoice PDF renderer.

Draws an InvoiceDocument on a ReportLab canvas (A4, 50pt margins).

Sections are laid out top to bottom; every section receives the offset where
the previous one ended and returns its own end offset, so wrapped text
pushes everything below it down. A section that no longer fits on the page
continues on a new one. Offsets are measured from the top of the page and
converted to ReportLab's bottom-up coordinates when drawing.

The canvas runs in ReportLab's invariant mode, so the same document and the
same ``generated_at`` produce identical bytes.
"""

import io
import logging
from datetime import UTC, datetime

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from services.invoices.errors import RenderFailure
from services.invoices.schema import InvoiceDocument, LineItem
from services.rendering.formatting import (
    format_currency,
    format_hours,
    format_long_date,
    format_timestamp,
    format_work_period,
)

logger = logging.getLogger(__name__)

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN = 50.0
CONTENT_WIDTH = PAGE_WIDTH - 2 * MARGIN
FOOTER_HEIGHT = 60.0
CONTENT_BOTTOM = PAGE_HEIGHT - MARGIN - FOOTER_HEIGHT

FONT_REGULAR = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
FONT_ITALIC = "Helvetica-Oblique"
LEADING = 1.3

PRIMARY = colors.HexColor("#1a1a2e")
SECONDARY = colors.HexColor("#666666")
ACCENT = colors.HexColor("#2563eb")
BORDER = colors.HexColor("#e5e5e5")
ROW_SHADE = colors.HexColor("#f3f4f6")
MUTED = colors.HexColor("#9ca3af")

PARTY_COLUMN_WIDTH = 230.0
PARTY_COLUMN_GAP = 280.0

# Table column fractions: description, hours, rate, amount
TABLE_COLUMNS = (0.45, 0.15, 0.20, 0.20)
TABLE_HEADER_HEIGHT = 22.0
TABLE_CELL_PADDING = 8.0
TABLE_MIN_ROW_HEIGHT = 24.0
TOTAL_BOX_WIDTH = 200.0
TOTAL_BOX_HEIGHT = 28.0

BANKING_LABEL_WIDTH = 130.0
BANKING_NOT_PROVIDED = (
    "Banking details not provided. Please contact the contractor for payment instructions."
)


def line_height(size: float) -> float:
    return size * LEADING


def wrap(text: str, font: str, size: float, width: float) -> list[str]:
    """Split text into lines that fit ``width`` (explicit newlines kept)."""
    if not text:
        return []
    return simpleSplit(text, font, size, width) or [""]


def text_height(text: str, font: str, size: float, width: float) -> float:
    return len(wrap(text, font, size, width)) * line_height(size)


class _Page:
    """Canvas wrapper that tracks pages and converts top offsets."""

    def __init__(self, pdf: canvas.Canvas, footer_lines: list[str]) -> None:
        self.pdf = pdf
        self.footer_lines = footer_lines

    def baseline(self, top: float, size: float) -> float:
        return PAGE_HEIGHT - top - size

    def text(
        self,
        x: float,
        top: float,
        value: str,
        font: str = FONT_REGULAR,
        size: float = 10,
        color: colors.Color = PRIMARY,
        align: str = "left",
    ) -> None:
        self.pdf.setFont(font, size)
        self.pdf.setFillColor(color)
        y = self.baseline(top, size)
        if align == "right":
            self.pdf.drawRightString(x, y, value)
        elif align == "center":
            self.pdf.drawCentredString(x, y, value)
        else:
            self.pdf.drawString(x, y, value)

    def lines(
        self,
        x: float,
        top: float,
        lines: list[str],
        font: str = FONT_REGULAR,
        size: float = 10,
        color: colors.Color = PRIMARY,
    ) -> float:
        for line in lines:
            self.text(x, top, line, font, size, color)
            top += line_height(size)
        return top

    def fill_rect(
        self, x: float, top: float, width: float, height: float, color: colors.Color
    ) -> None:
        self.pdf.setFillColor(color)
        self.pdf.rect(x, PAGE_HEIGHT - top - height, width, height, stroke=0, fill=1)

    def rule(self, top: float, color: colors.Color = BORDER) -> None:
        self.pdf.setStrokeColor(color)
        self.pdf.setLineWidth(1)
        self.pdf.line(MARGIN, PAGE_HEIGHT - top, PAGE_WIDTH - MARGIN, PAGE_HEIGHT - top)

    def ensure(self, top: float, height: float) -> float:
        """Start a new page when ``height`` does not fit below ``top``."""
        if top + height <= CONTENT_BOTTOM or top <= MARGIN:
            return top
        self.finish()
        return MARGIN

    def finish(self) -> None:
        self.draw_footer()
        self.pdf.showPage()

    def draw_footer(self) -> None:
        top = PAGE_HEIGHT - MARGIN - FOOTER_HEIGHT + 15
        self.rule(top)
        center = PAGE_WIDTH / 2
        thanks = "Thank you for your business!"
        self.text(center, top + 10, thanks, size=9, color=SECONDARY, align="center")
        for index, value in enumerate(self.footer_lines):
            self.text(center, top + 24 + index * 11, value, size=8, color=MUTED, align="center")
        self.text(
            PAGE_WIDTH - MARGIN,
            top + 10,
            f"Page {self.pdf.getPageNumber()}",
            size=8,
            color=MUTED,
            align="right",
        )


class DocumentRenderer:
    """Renders InvoiceDocument values to PDF bytes. Stateless."""

    def __init__(self, compress: bool = True) -> None:
        self.compress = compress

    def render(self, document: InvoiceDocument, generated_at: datetime | None = None) -> bytes:
        """Render an invoice.

        Args:
            document: Invoice to draw
            generated_at: Footer timestamp (defaults to now)

        Returns:
            PDF bytes

        Raises:
            RenderFailure: If ReportLab fails to produce the document
        """
        generated_at = generated_at or datetime.now(UTC)
        buffer = io.BytesIO()

        try:
            pdf = canvas.Canvas(
                buffer,
                pagesize=A4,
                invariant=1,
                pageCompression=1 if self.compress else 0,
            )
            pdf.setTitle(f"Invoice {document.invoice_number}")
            pdf.setAuthor(document.payee.name)
            pdf.setSubject(f"Invoice for {document.project.project_name}")
            pdf.setCreator("Invoicing Platform")

            page = _Page(
                pdf,
                footer_lines=[
                    "This invoice was generated automatically. "
                    "Please contact us for any questions.",
                    f"Generated on {format_timestamp(generated_at)}",
                ],
            )

            top = MARGIN
            top = self.draw_header(page, document, top)
            top = self.draw_parties(page, document, top)
            top = self.draw_project(page, document, top)
            top = self.draw_line_items(page, document, top)
            top = self.draw_descriptions(page, document, top)
            self.draw_banking(page, document, top)

            page.finish()
            pdf.save()
        except Exception as e:
            logger.error(f"Rendering invoice {document.invoice_number} failed: {e}")
            raise RenderFailure(f"Failed to render invoice {document.invoice_number}: {e}") from e

        data = buffer.getvalue()
        logger.debug(f"Rendered invoice {document.invoice_number} ({len(data)} bytes)")
        return data

    def draw_header(self, page: _Page, document: InvoiceDocument, top: float) -> float:
        page.text(MARGIN, top, "INVOICE", FONT_BOLD, 28, PRIMARY)

        right = PAGE_WIDTH - MARGIN
        details = [
            ("Invoice No:", document.invoice_number),
            ("Date:", format_long_date(document.issue_date)),
            ("Due Date:", format_long_date(document.due_date)),
        ]
        row_top = top + 4
        for label, value in details:
            page.text(right, row_top, value, FONT_BOLD, 10, PRIMARY, align="right")
            value_width = page.pdf.stringWidth(value, FONT_BOLD, 10)
            label_right = right - value_width - 6
            page.text(label_right, row_top, label, FONT_REGULAR, 10, SECONDARY, align="right")
            row_top += 15

        top = max(top + line_height(28), row_top) + 10
        page.rule(top)
        return top + 20

    def _party_block(
        self, label: str, name: str, address: str, email: str
    ) -> list[tuple[str, float, list[str]]]:
        width = PARTY_COLUMN_WIDTH
        blocks = [
            (FONT_BOLD, 11, [label]),
            (FONT_BOLD, 12, wrap(name, FONT_BOLD, 12, width)),
            (FONT_REGULAR, 10, wrap(address, FONT_REGULAR, 10, width)),
        ]
        if email:
            blocks.append((FONT_REGULAR, 10, wrap(email, FONT_REGULAR, 10, width)))
        return blocks

    @staticmethod
    def _block_height(blocks: list[tuple[str, float, list[str]]]) -> float:
        lines_height = sum(len(lines) * line_height(size) for _, size, lines in blocks)
        return lines_height + 4 * (len(blocks) - 1)

    def draw_parties(self, page: _Page, document: InvoiceDocument, top: float) -> float:
        payee, payer = document.payee, document.payer
        columns = [
            (MARGIN, self._party_block("FROM", payee.name, payee.address, payee.email)),
            (
                MARGIN + PARTY_COLUMN_GAP,
                self._party_block("BILL TO", payer.name, payer.address, payer.email),
            ),
        ]
        height = max(self._block_height(blocks) for _, blocks in columns)
        top = page.ensure(top, height)

        for x, blocks in columns:
            cursor = top
            for index, (font, size, lines) in enumerate(blocks):
                color = ACCENT if index == 0 else (PRIMARY if index == 1 else SECONDARY)
                cursor = page.lines(x, cursor, lines, font, size, color) + 4

        top += height + 15
        page.rule(top)
        return top + 20

    def draw_project(self, page: _Page, document: InvoiceDocument, top: float) -> float:
        project = document.project
        context = [f"Submission ID: {project.submission_id}"]
        if project.work_period:
            context.insert(0, f"Work Period: {format_work_period(project.work_period)}")
        context_line = "  |  ".join(context)

        name_lines = wrap(project.project_name, FONT_REGULAR, 12, CONTENT_WIDTH)
        height = line_height(10) + len(name_lines) * line_height(12) + line_height(9)
        top = page.ensure(top, height)

        page.text(MARGIN, top, "PROJECT", FONT_BOLD, 10, SECONDARY)
        top = page.lines(MARGIN, top + line_height(10), name_lines, FONT_REGULAR, 12, PRIMARY)
        page.text(MARGIN, top, context_line, FONT_REGULAR, 9, SECONDARY)
        top += line_height(9) + 10
        page.rule(top)
        return top + 20

    @staticmethod
    def _column_positions() -> list[tuple[float, float]]:
        positions = []
        x = MARGIN
        for fraction in TABLE_COLUMNS:
            width = CONTENT_WIDTH * fraction
            positions.append((x, width))
            x += width
        return positions

    def _draw_table_header(self, page: _Page, top: float) -> float:
        page.fill_rect(MARGIN, top, CONTENT_WIDTH, TABLE_HEADER_HEIGHT, PRIMARY)
        text_top = top + (TABLE_HEADER_HEIGHT - 10) / 2
        columns = self._column_positions()
        titles = ("Description", "Hours", "Rate", "Amount")
        for (x, width), title in zip(columns, titles, strict=True):
            if title == "Description":
                page.text(x + TABLE_CELL_PADDING, text_top, title, FONT_BOLD, 10, colors.white)
            else:
                right = x + width - TABLE_CELL_PADDING
                page.text(right, text_top, title, FONT_BOLD, 10, colors.white, "right")
        return top + TABLE_HEADER_HEIGHT

    def _draw_row(
        self, page: _Page, item: LineItem, currency: str, top: float, shaded: bool
    ) -> float:
        columns = self._column_positions()
        desc_x, desc_width = columns[0]
        lines = wrap(item.description, FONT_REGULAR, 10, desc_width - 2 * TABLE_CELL_PADDING)
        height = max(TABLE_MIN_ROW_HEIGHT, len(lines) * line_height(10) + 2 * TABLE_CELL_PADDING)

        if shaded:
            page.fill_rect(MARGIN, top, CONTENT_WIDTH, height, ROW_SHADE)

        cell_top = top + TABLE_CELL_PADDING
        page.lines(desc_x + TABLE_CELL_PADDING, cell_top, lines, FONT_REGULAR, 10, PRIMARY)
        values = (
            format_hours(item.quantity),
            format_currency(item.unit_rate, currency),
            format_currency(item.amount, currency),
        )
        for (x, width), value in zip(columns[1:], values, strict=True):
            right = x + width - TABLE_CELL_PADDING
            page.text(right, cell_top, value, FONT_REGULAR, 10, PRIMARY, "right")
        return top + height

    def draw_line_items(self, page: _Page, document: InvoiceDocument, top: float) -> float:
        top = page.ensure(top, TABLE_HEADER_HEIGHT + TABLE_MIN_ROW_HEIGHT)
        top = self._draw_table_header(page, top)

        if not document.line_items:
            page.text(
                MARGIN + TABLE_CELL_PADDING,
                top + TABLE_CELL_PADDING,
                "No billable hours",
                FONT_ITALIC,
                10,
                SECONDARY,
            )
            top += TABLE_MIN_ROW_HEIGHT

        for index, item in enumerate(document.line_items):
            desc_width = CONTENT_WIDTH * TABLE_COLUMNS[0] - 2 * TABLE_CELL_PADDING
            desc_height = text_height(item.description, FONT_REGULAR, 10, desc_width)
            needed = max(TABLE_MIN_ROW_HEIGHT, desc_height + 2 * TABLE_CELL_PADDING)
            new_top = page.ensure(top, needed)
            if new_top != top:
                top = self._draw_table_header(page, new_top)
            top = self._draw_row(page, item, document.currency, top, shaded=index % 2 == 0)

        page.rule(top, SECONDARY)
        top += 10

        top = page.ensure(top, TOTAL_BOX_HEIGHT)
        box_x = PAGE_WIDTH - MARGIN - TOTAL_BOX_WIDTH
        page.fill_rect(box_x, top, TOTAL_BOX_WIDTH, TOTAL_BOX_HEIGHT, PRIMARY)
        text_top = top + (TOTAL_BOX_HEIGHT - 12) / 2
        page.text(box_x + TABLE_CELL_PADDING, text_top, "TOTAL:", FONT_BOLD, 12, colors.white)
        page.text(
            PAGE_WIDTH - MARGIN - TABLE_CELL_PADDING,
            text_top,
            format_currency(document.total, document.currency),
            FONT_BOLD,
            12,
            colors.white,
            "right",
        )
        return top + TOTAL_BOX_HEIGHT + 25

    def _draw_paragraph(self, page: _Page, title: str, body: str, top: float) -> float:
        lines = wrap(body, FONT_REGULAR, 10, CONTENT_WIDTH)
        # Keep the title with at least the first line of the body
        top = page.ensure(top, line_height(10) + line_height(10) + 4)
        page.text(MARGIN, top, title, FONT_BOLD, 10, ACCENT)
        top += line_height(10) + 4
        for line in lines:
            top = page.ensure(top, line_height(10))
            page.text(MARGIN, top, line, FONT_REGULAR, 10, SECONDARY)
            top += line_height(10)
        return top + 15

    def draw_descriptions(self, page: _Page, document: InvoiceDocument, top: float) -> float:
        top = self._draw_paragraph(page, "WORK DESCRIPTION", document.description, top)
        if document.overtime_description:
            top = self._draw_paragraph(
                page, "OVERTIME DESCRIPTION", document.overtime_description, top
            )
        return top

    def draw_banking(self, page: _Page, document: InvoiceDocument, top: float) -> float:
        banking = document.banking
        if banking is None:
            lines = wrap(BANKING_NOT_PROVIDED, FONT_ITALIC, 10, CONTENT_WIDTH)
            top = page.ensure(top, line_height(11) + 4 + len(lines) * line_height(10))
            page.text(MARGIN, top, "PAYMENT INFORMATION", FONT_BOLD, 11, ACCENT)
            return page.lines(MARGIN, top + line_height(11) + 4, lines, FONT_ITALIC, 10, SECONDARY)

        fields = [
            ("Payable To:", banking.payable_to),
            ("Bank Name:", banking.bank_name or "N/A"),
            ("Bank Address:", banking.bank_address),
            ("SWIFT Code:", banking.swift_code),
            ("Routing Number:", banking.routing_number),
            ("Account Number:", banking.masked_account_number or "N/A"),
            ("Account Type:", banking.account_type),
            ("Intermediary Bank:", banking.intermediary_bank),
        ]
        rows = [(label, value) for label, value in fields if value]
        value_width = CONTENT_WIDTH - BANKING_LABEL_WIDTH
        wrapped = [(label, wrap(value, FONT_BOLD, 10, value_width)) for label, value in rows]
        height = line_height(11) + 4 + sum(len(lines) * line_height(10) + 4 for _, lines in wrapped)
        top = page.ensure(top, height)

        page.text(MARGIN, top, "PAYMENT INFORMATION", FONT_BOLD, 11, ACCENT)
        top += line_height(11) + 4
        for label, lines in wrapped:
            page.text(MARGIN, top, label, FONT_REGULAR, 10, SECONDARY)
            top = page.lines(MARGIN + BANKING_LABEL_WIDTH, top, lines, FONT_BOLD, 10, PRIMARY) + 4
        return top
