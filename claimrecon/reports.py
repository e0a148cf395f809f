"""PDF rendering of accounts-receivable aging reports.

Layout: navy header bar, overall bucket summary, then one table per
breakdown (payer, program) with a bucket column per aging band.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from claimrecon.aging import BUCKET_LABELS, AgingBreakdown, AgingReport

HEADER_COLOR = colors.HexColor("#1e3a5f")
STRIPE_COLOR = colors.HexColor("#e8edf2")
COLS = [35, 215, 285, 345, 405, 465, 525]


def _money(value: Decimal) -> str:
    return f"${value:,.2f}"


def render_aging_pdf(report: AgingReport, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    w, h = letter
    c = canvas.Canvas(str(path), pagesize=letter)
    page = 1
    y = 0.0

    def draw_header() -> None:
        nonlocal y
        c.setFillColor(HEADER_COLOR)
        c.rect(0, h - 70, w, 70, fill=True, stroke=False)
        c.setFillColor(colors.white)
        c.setFont("Helvetica-Bold", 16)
        c.drawString(40, h - 35, "Accounts Receivable Aging")
        c.setFont("Helvetica", 9)
        filters = []
        if report.payer_id:
            filters.append(f"payer {report.payer_id}")
        if report.program_id:
            filters.append(f"program {report.program_id}")
        subtitle = f"As of {report.as_of_date.isoformat()}"
        if filters:
            subtitle += "  |  " + ", ".join(filters)
        c.drawString(40, h - 52, subtitle)
        c.drawRightString(w - 40, h - 35, f"Page {page}")
        y = h - 95
        c.setFillColor(colors.black)

    def new_page() -> None:
        nonlocal page
        c.showPage()
        page += 1
        draw_header()

    def table_header(title: str) -> None:
        nonlocal y
        c.setFont("Helvetica-Bold", 10)
        c.setFillColor(HEADER_COLOR)
        c.drawString(35, y, title)
        y -= 18
        c.setFillColor(STRIPE_COLOR)
        c.rect(30, y - 4, w - 60, 16, fill=True, stroke=False)
        c.setFillColor(HEADER_COLOR)
        c.setFont("Helvetica-Bold", 7.5)
        c.drawString(COLS[0], y, "Name")
        c.drawRightString(COLS[1] + 50, y, "Total")
        for x, label in zip(COLS[2:], BUCKET_LABELS):
            c.drawRightString(x + 50, y, label)
        y -= 16
        c.setFillColor(colors.black)

    def table(title: str, rows: list[AgingBreakdown]) -> None:
        nonlocal y
        if y < 120:
            new_page()
        table_header(title)
        c.setFont("Helvetica", 7.5)
        for row in rows:
            if y < 60:
                new_page()
                table_header(f"{title} (cont.)")
                c.setFont("Helvetica", 7.5)
            c.drawString(COLS[0], y, f"{row.name[:30]} ({row.claim_count})")
            c.drawRightString(COLS[1] + 50, y, _money(row.total_outstanding))
            for x, (_, amount) in zip(COLS[2:], row.buckets.as_rows()):
                c.drawRightString(x + 50, y, _money(amount))
            y -= 13
        y -= 20

    draw_header()

    c.setFont("Helvetica", 9)
    c.drawString(40, y, f"Claims: {report.claim_count}    Total outstanding: {_money(report.total_outstanding)}")
    y -= 24
    c.setFont("Helvetica-Bold", 8)
    for x, (label, amount) in zip(COLS[2:], report.buckets.as_rows()):
        c.drawRightString(x + 50, y, label)
        c.setFont("Helvetica", 8)
        c.drawRightString(x + 50, y - 13, _money(amount))
        c.setFont("Helvetica-Bold", 8)
    c.setStrokeColor(HEADER_COLOR)
    c.setLineWidth(0.5)
    c.line(30, y - 20, w - 30, y - 20)
    y -= 45

    table("By payer", report.by_payer)
    table("By program", report.by_program)

    c.save()
    return path
