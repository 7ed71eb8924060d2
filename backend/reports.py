import io
from decimal import Decimal, ROUND_HALF_UP
from typing import List

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle

from gst import resolve_claim_percent
from models import BusinessPercentages, GSTSummary, Transaction, TransactionType

CENT = Decimal("0.01")


def format_currency(value) -> str:
    """AUD display format, e.g. $1,234.56 or -$3.00."""
    amount = Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def net_payable_display(summary: GSTSummary) -> str:
    """Net amount without its sign; refunds are labelled instead."""
    text = format_currency(abs(summary.net_payable))
    if summary.is_refund:
        text += " (Refund)"
    return text


def build_gst_report(summary: GSTSummary, transactions: List[Transaction],
                     percentages: BusinessPercentages) -> io.BytesIO:
    """Render the period summary and its transactions as a PDF."""
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=landscape(A4), title=f"GST Report - {summary.period_label}")
    elements = []

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        'CustomTitle',
        parent=styles['Heading1'],
        fontSize=16,
        spaceAfter=30
    )
    elements.append(Paragraph(f"GST Report - {summary.period_label}", title_style))
    elements.append(Spacer(1, 12))

    summary_data = [
        ["GST Collected", format_currency(summary.total_collected)],
        ["GST Paid (Credits)", format_currency(summary.total_paid)],
        ["Net GST Payable", net_payable_display(summary)],
    ]
    summary_table = Table(summary_data, colWidths=[200, 140])
    summary_table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (0, -1), colors.lightgrey),
        ('TEXTCOLOR', (0, 0), (-1, -1), colors.black),
        ('ALIGN', (1, 0), (1, -1), 'RIGHT'),
        ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
        ('FONTNAME', (1, 0), (1, -1), 'Helvetica'),
        ('FONTSIZE', (0, 0), (-1, -1), 11),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 8),
        ('GRID', (0, 0), (-1, -1), 1, colors.black)
    ]))
    elements.append(summary_table)
    elements.append(Spacer(1, 20))

    if transactions:
        rows = [["Date", "Description", "Category", "Platform", "Gross", "GST", "Claim %"]]
        for tx in transactions:
            claim = resolve_claim_percent(tx.category, percentages) if tx.type == TransactionType.EXPENSE else 100
            rows.append([
                tx.date.isoformat(),
                Paragraph(tx.description or "-", styles["BodyText"]),
                Paragraph(tx.category, styles["BodyText"]),
                tx.platform.value,
                format_currency(tx.gross_amount),
                format_currency(tx.gst_amount),
                f"{claim}%",
            ])

        table = Table(rows, colWidths=[70, 190, 210, 60, 75, 65, 55], repeatRows=1)
        table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.lightgrey),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.black),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, 0), 10),
            ('BOTTOMPADDING', (0, 0), (-1, 0), 12),
            ('BACKGROUND', (0, 1), (-1, -1), colors.white),
            ('FONTNAME', (0, 1), (-1, -1), 'Helvetica'),
            ('FONTSIZE', (0, 1), (-1, -1), 8),
            ('ALIGN', (4, 1), (-1, -1), 'RIGHT'),
            ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
            ('GRID', (0, 0), (-1, -1), 1, colors.black)
        ]))
        elements.append(table)
    else:
        elements.append(Paragraph("No transactions found for the selected period.", styles["Normal"]))

    doc.build(elements)
    buffer.seek(0)
    return buffer
