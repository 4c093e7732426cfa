"""
Certificate of Analysis rendering.

Each certificate carries a QR code pointing at the public /verify/<code> page.
Batch output concatenates certificates into one document, one per page group.
"""
from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import cm
from reportlab.platypus import PageBreak, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.lims.models import Lab
from app.lims.pdf import image_flowable, lab_header, qr_png, styles, table
from app.lims.storage import Storage, read_optional

from .models import Report, ReportTemplate

PAGE_WIDTH = A4[0] - 3 * cm


@dataclass(frozen=True)
class CoaInput:
    report: Report
    lab: Lab | None
    template: ReportTemplate | None
    verify_url: str


def _fmt_date(d) -> str:
    return d.strftime("%d %b %Y") if d else "-"


def _spec_text(tr) -> str:
    if tr.spec_min and tr.spec_max:
        return f"{tr.spec_min} - {tr.spec_max}"
    if tr.spec_min:
        return f"Min {tr.spec_min}"
    if tr.spec_max:
        return f"Max {tr.spec_max}"
    return "-"


def _coa_story(item: CoaInput, storage: Storage) -> list:
    st = styles()
    report, lab, template = item.report, item.lab, item.template
    sample = report.sample
    customer = sample.customer
    story: list = []

    logo_key = None
    if template is not None and template.logo_key:
        logo_key = template.logo_key
    elif lab is not None and (template is None or template.show_lab_logo):
        logo_key = lab.logo_key
    story.append(lab_header(lab, read_optional(storage, logo_key), st, width=PAGE_WIDTH))
    if template is not None and template.header_text:
        story.append(Paragraph(escape(template.header_text), st["center"]))
    story.append(Spacer(1, 8))
    story.append(Paragraph("CERTIFICATE OF ANALYSIS", st["title"]))

    info = [
        ["Report No.", report.report_number, "Sample No.", sample.sample_number],
        ["Client", customer.display_name if customer else "-", "Sample Type", sample.sample_type.name if sample.sample_type else "-"],
        ["Reference", sample.reference or "-", "Sample Point", sample.sample_point or "-"],
        ["Received", _fmt_date(sample.registered_at), "Issued", _fmt_date(report.published_at or report.reviewed_at)],
    ]
    if sample.sample_type is not None and sample.sample_type.specification_standard:
        info.append(["Specification", sample.sample_type.specification_standard, "Condition", sample.sample_condition or "-"])
    story.append(
        table(
            info,
            [3 * cm, 5.5 * cm, 3 * cm, PAGE_WIDTH - 11.5 * cm],
            extra=[
                ("BACKGROUND", (0, 0), (0, -1), colors.lightgrey),
                ("BACKGROUND", (2, 0), (2, -1), colors.lightgrey),
            ],
        )
    )
    story.append(Spacer(1, 10))

    story.append(Paragraph("Test Results", st["heading"]))
    rows = [["Parameter", "Method", "Unit", "Specification", "Result"]]
    flagged = []
    for i, tr in enumerate(sample.test_results, start=1):
        rows.append([tr.parameter, tr.test_method or "-", tr.unit or "-", _spec_text(tr), tr.result_value or "-"])
        if tr.within_spec is False:
            flagged.append(("TEXTCOLOR", (4, i), (4, i), colors.red))
    story.append(
        table(
            rows,
            [5 * cm, 3.5 * cm, 2 * cm, 3.5 * cm, PAGE_WIDTH - 14 * cm],
            header=True,
            extra=flagged,
        )
    )

    if report.summary:
        story.append(Spacer(1, 8))
        story.append(Paragraph("Remarks", st["heading"]))
        story.append(Paragraph(escape(report.summary), st["body"]))

    story.append(Spacer(1, 16))
    story.append(_sign_off_block(item, storage, st))

    if template is not None and (template.accreditation_text or template.accreditation_logo_key):
        story.append(Spacer(1, 8))
        acc_img = image_flowable(
            read_optional(storage, template.accreditation_logo_key), max_width=3 * cm, max_height=2 * cm
        )
        acc = Table(
            [[acc_img or "", Paragraph(escape(template.accreditation_text or ""), st["small"])]],
            colWidths=[3.5 * cm, PAGE_WIDTH - 3.5 * cm],
        )
        acc.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "MIDDLE")]))
        story.append(acc)

    story.append(Spacer(1, 6))
    footer = template.footer_text if template is not None and template.footer_text else None
    story.append(
        Paragraph(
            escape(footer) if footer else "This certificate relates only to the sample tested. It shall not be reproduced except in full.",
            st["small"],
        )
    )
    return story


def _sign_off_block(item: CoaInput, storage: Storage, st) -> Table:
    report, template = item.report, item.template
    reviewer = report.reviewed_by
    signature = image_flowable(
        read_optional(storage, reviewer.signature_key if reviewer else None), max_width=4 * cm, max_height=1.5 * cm
    )
    seal = image_flowable(
        read_optional(storage, template.seal_key if template is not None else None), max_width=3 * cm, max_height=3 * cm
    )
    qr = image_flowable(qr_png(item.verify_url, box_size=4), max_width=3 * cm, max_height=3 * cm)

    authorised = [signature or Spacer(1, 1.5 * cm)]
    if reviewer is not None:
        authorised.append(Paragraph(f"<b>{escape(reviewer.name)}</b>", st["body"]))
        if reviewer.designation:
            authorised.append(Paragraph(escape(reviewer.designation), st["small"]))
    authorised.append(Paragraph("Authorised Signatory", st["small"]))

    verify = [qr, Paragraph("Scan to verify", st["small"])]
    t = Table(
        [[authorised, seal or "", verify]],
        colWidths=[7 * cm, 4 * cm, PAGE_WIDTH - 11 * cm],
    )
    t.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "BOTTOM"), ("ALIGN", (2, 0), (2, 0), "CENTER")]))
    return t


def _build(stories: list[list]) -> bytes:
    buf = BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=A4, topMargin=1.2 * cm, bottomMargin=1.2 * cm, leftMargin=1.5 * cm, rightMargin=1.5 * cm)
    elements: list = []
    for i, story in enumerate(stories):
        if i:
            elements.append(PageBreak())
        elements.extend(story)
    doc.build(elements)
    return buf.getvalue()


def render_coa(item: CoaInput, storage: Storage) -> bytes:
    return _build([_coa_story(item, storage)])


def render_batch_coa(items: list[CoaInput], storage: Storage) -> bytes:
    if not items:
        raise ValueError("No reports selected.")
    return _build([_coa_story(item, storage) for item in items])
