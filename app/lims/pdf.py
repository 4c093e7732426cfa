"""
Shared PDF building blocks (reportlab) and sample labels.
"""
from __future__ import annotations

from io import BytesIO
from typing import TYPE_CHECKING
from xml.sax.saxutils import escape

import qrcode
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm, mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas
from reportlab.platypus import Image, Paragraph, Table, TableStyle

if TYPE_CHECKING:
    from app.lims.models import Lab
    from app.lims.modules.samples.models import Sample

LABEL_SIZE = (100 * mm, 50 * mm)

GRID_STYLE = [
    ("FONTNAME", (0, 0), (-1, -1), "Helvetica"),
    ("FONTSIZE", (0, 0), (-1, -1), 9),
    ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
    ("PADDING", (0, 0), (-1, -1), 4),
    ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
]
HEADER_ROW_STYLE = [
    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1f3a5f")),
    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
]


def qr_png(data: str, *, box_size: int = 10, border: int = 2) -> bytes:
    qr = qrcode.QRCode(box_size=box_size, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = BytesIO()
    img.save(buf)
    return buf.getvalue()


def styles() -> dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    return {
        "title": ParagraphStyle("LimsTitle", parent=base["Heading1"], fontSize=16, alignment=TA_CENTER, spaceAfter=8),
        "heading": ParagraphStyle("LimsHeading", parent=base["Heading3"], fontSize=11, spaceBefore=8, spaceAfter=4),
        "body": ParagraphStyle("LimsBody", parent=base["Normal"], fontSize=9, leading=12),
        "small": ParagraphStyle("LimsSmall", parent=base["Normal"], fontSize=7, leading=9, textColor=colors.grey),
        "center": ParagraphStyle("LimsCenter", parent=base["Normal"], fontSize=9, alignment=TA_CENTER),
    }


def image_flowable(data: bytes | None, *, max_width: float, max_height: float) -> Image | None:
    """Scale an image to fit the box; None when there is no usable image."""
    if not data:
        return None
    try:
        reader = ImageReader(BytesIO(data))
        w, h = reader.getSize()
    except (OSError, ValueError):
        return None
    if not w or not h:
        return None
    ratio = min(max_width / w, max_height / h)
    return Image(BytesIO(data), width=w * ratio, height=h * ratio)


def table(data: list[list], col_widths: list[float], *, header: bool = False, extra: list | None = None) -> Table:
    t = Table(data, colWidths=col_widths, repeatRows=1 if header else 0)
    style = list(GRID_STYLE)
    if header:
        style += HEADER_ROW_STYLE
    if extra:
        style += extra
    t.setStyle(TableStyle(style))
    return t


def lab_header(lab: Lab | None, logo: bytes | None, st: dict[str, ParagraphStyle], *, width: float) -> Table:
    """Logo on the left, lab name and contact lines on the right."""
    lines = []
    if lab is not None:
        lines.append(f"<b>{escape(lab.name)}</b>")
        for v in (lab.address, " | ".join(x for x in (lab.phone, lab.email, lab.website) if x)):
            if v:
                lines.append(escape(v))
        if lab.trn:
            lines.append(escape(f"TRN: {lab.trn}"))
    info = Paragraph("<br/>".join(lines), st["body"])
    img = image_flowable(logo, max_width=3.5 * cm, max_height=2.5 * cm)
    t = Table([[img or "", info]], colWidths=[4 * cm, width - 4 * cm])
    t.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "MIDDLE"), ("LINEBELOW", (0, 0), (-1, 0), 1, colors.black)]))
    return t


def scan_url(base_url: str, sample: Sample) -> str:
    return f"{base_url.rstrip('/')}/scan/{sample.id}"


def render_sample_labels(samples: list[Sample], *, base_url: str) -> bytes:
    """One 100x50mm page per sample: QR linking to the scan page plus the key fields."""
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=LABEL_SIZE)
    _, height = LABEL_SIZE
    for sample in samples:
        qr = ImageReader(BytesIO(qr_png(scan_url(base_url, sample), box_size=4, border=1)))
        c.drawImage(qr, 3 * mm, 5 * mm, width=40 * mm, height=40 * mm)
        x = 46 * mm
        y = height - 9 * mm
        c.setFont("Helvetica-Bold", 10)
        c.drawString(x, y, sample.sample_number)
        c.setFont("Helvetica", 8)
        when = sample.collection_date or sample.created_at
        lines = [
            sample.customer.display_name if sample.customer else "",
            sample.sample_type.name if sample.sample_type else "",
            sample.sample_point or sample.description or "",
            f"Qty: {sample.quantity}" if sample.quantity else "",
            when.strftime("%Y-%m-%d") if when else "",
            f"Priority: {sample.priority}" if sample.priority != "normal" else "",
        ]
        for line in [ln for ln in lines if ln]:
            y -= 5 * mm
            c.drawString(x, y, line[:32])
        c.showPage()
    c.save()
    return buf.getvalue()

