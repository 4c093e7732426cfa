from __future__ import annotations

from decimal import Decimal
from io import BytesIO
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer

from app.lims.models import Lab
from app.lims.pdf import lab_header, styles, table

from .models import Contract, Invoice, Quotation

PAGE_WIDTH = A4[0] - 3 * cm


def money(v: Decimal | None) -> str:
    return f"{(v or Decimal('0')):,.2f}"


def _fmt(d) -> str:
    return d.strftime("%d %b %Y") if d else "-"


def _title_and_meta(doc: Quotation | Contract | Invoice) -> tuple[str, list[list[str]]]:
    if isinstance(doc, Quotation):
        return "QUOTATION", [
            ["Quotation No.", doc.quotation_number, "Date", _fmt(doc.created_at)],
            ["Status", doc.status.title(), "Valid Until", _fmt(doc.valid_until)],
        ]
    if isinstance(doc, Contract):
        return "CONTRACT", [
            ["Contract No.", doc.contract_number, "Date", _fmt(doc.created_at)],
            ["Start", _fmt(doc.start_date), "End", _fmt(doc.end_date)],
        ]
    title = "PROFORMA INVOICE" if doc.is_proforma else "TAX INVOICE"
    return title, [
        ["Invoice No.", doc.invoice_number, "Date", _fmt(doc.created_at)],
        ["Status", doc.status.title(), "Due Date", _fmt(doc.due_date)],
    ]


def render_billing_pdf(doc: Quotation | Contract | Invoice, lab: Lab | None, logo: bytes | None) -> bytes:
    st = styles()
    title, meta = _title_and_meta(doc)
    customer = doc.customer
    story: list = [lab_header(lab, logo, st, width=PAGE_WIDTH), Spacer(1, 8), Paragraph(title, st["title"])]

    bill_to = [f"<b>{escape(customer.display_name)}</b>"] if customer else []
    if customer is not None:
        for v in (customer.address, customer.email, customer.phone):
            if v:
                bill_to.append(escape(v))
        if customer.trn:
            bill_to.append(escape(f"TRN: {customer.trn}"))
    story.append(Paragraph("Bill To", st["heading"]))
    story.append(Paragraph("<br/>".join(bill_to) or "-", st["body"]))
    story.append(Spacer(1, 6))
    story.append(
        table(
            meta,
            [3 * cm, 5.5 * cm, 3 * cm, PAGE_WIDTH - 11.5 * cm],
            extra=[("BACKGROUND", (0, 0), (0, -1), colors.lightgrey), ("BACKGROUND", (2, 0), (2, -1), colors.lightgrey)],
        )
    )
    story.append(Spacer(1, 10))

    rows = [["#", "Description", "Qty", "Unit Price", "Total"]]
    for i, it in enumerate(doc.items, start=1):
        desc = it.description
        if it.sample is not None:
            desc = f"{desc} ({it.sample.sample_number})"
        rows.append([str(i), Paragraph(escape(desc), st["body"]), f"{it.quantity:g}", money(it.unit_price), money(it.total)])
    n = len(rows)
    rows += [
        ["", "", "", "Subtotal", money(doc.subtotal)],
        ["", "", "", f"Tax ({doc.tax_rate:g}%)", money(doc.tax_amount)],
        ["", "", "", "Total", money(doc.total)],
    ]
    story.append(
        table(
            rows,
            [1 * cm, PAGE_WIDTH - 10 * cm, 2 * cm, 3.5 * cm, 3.5 * cm],
            header=True,
            extra=[
                ("ALIGN", (2, 1), (-1, -1), "RIGHT"),
                ("FONTNAME", (3, n + 2), (-1, n + 2), "Helvetica-Bold"),
                ("LINEABOVE", (3, n), (-1, n), 1, colors.black),
            ],
        )
    )

    if isinstance(doc, Contract) and doc.terms:
        story.append(Paragraph("Terms", st["heading"]))
        story.append(Paragraph(escape(doc.terms), st["body"]))
    if doc.notes:
        story.append(Paragraph("Notes", st["heading"]))
        story.append(Paragraph(escape(doc.notes), st["body"]))

    buf = BytesIO()
    SimpleDocTemplate(buf, pagesize=A4, topMargin=1.2 * cm, bottomMargin=1.2 * cm, leftMargin=1.5 * cm, rightMargin=1.5 * cm).build(story)
    return buf.getvalue()
