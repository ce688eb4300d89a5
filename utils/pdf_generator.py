"""Joining letter and ID card PDFs for accepted members.

Rendering is treated as an unreliable boundary call: every attempt runs on a worker thread bounded by
``PDF_TIMEOUT_SECONDS``, failed attempts are retried ``PDF_RETRY`` times with linear backoff
(``PDF_BACKOFF_MS`` x attempt), and joining letters degrade to a minimal fallback letter when every
attempt fails.
"""
import io
import os
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List
from xml.sax.saxutils import escape

from flask import current_app
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from utils.errors import ExternalServiceError


PAGE_MARGIN = 20 * mm
CONTENT_WIDTH = A4[0] - (PAGE_MARGIN * 2)
CARD_SIZE = (90 * mm, 140 * mm)
CARD_MARGIN = 6 * mm

styles = getSampleStyleSheet()

TITLE_STYLE = ParagraphStyle(
    name="LetterTitle",
    parent=styles["Title"],
    fontName="Helvetica-Bold",
    fontSize=16,
    leading=20,
    alignment=1,
    spaceAfter=4,
    textColor=colors.HexColor("#7a1f1f"),
)

SUBTITLE_STYLE = ParagraphStyle(
    name="LetterSubtitle",
    fontName="Helvetica",
    fontSize=8,
    leading=10,
    alignment=1,
    textColor=colors.black,
)

HEADING_STYLE = ParagraphStyle(
    name="SectionHeading",
    fontName="Helvetica-Bold",
    fontSize=11,
    leading=14,
    textColor=colors.black,
    spaceBefore=4,
    spaceAfter=6,
    keepWithNext=True,
)

BODY_STYLE = ParagraphStyle(
    name="BodyText",
    fontName="Helvetica",
    fontSize=10,
    leading=14,
    textColor=colors.black,
    wordWrap="CJK",
    splitLongWords=True,
)

SMALL_STYLE = ParagraphStyle(
    name="SmallText",
    parent=BODY_STYLE,
    fontSize=7,
    leading=9,
)

LABEL_STYLE = ParagraphStyle(
    name="LabelText",
    parent=BODY_STYLE,
    fontName="Helvetica-Bold",
)

CARD_NAME_STYLE = ParagraphStyle(
    name="CardName",
    parent=LABEL_STYLE,
    fontSize=11,
    leading=13,
    alignment=1,
)

CARD_BODY_STYLE = ParagraphStyle(
    name="CardBody",
    parent=BODY_STYLE,
    fontSize=7.5,
    leading=9.5,
)

CARD_LABEL_STYLE = ParagraphStyle(
    name="CardLabel",
    parent=CARD_BODY_STYLE,
    fontName="Helvetica-Bold",
)


class PdfRenderError(Exception):
    """A single render attempt failed or timed out."""


def _para(value: str, style: ParagraphStyle = BODY_STYLE) -> Paragraph:
    """Create a wrapping paragraph with safe escaping and soft line handling."""
    text = escape(str(value or "").strip())
    text = text.replace("\n", "<br/>")
    text = text if text else "N/A"
    return Paragraph(text, style)


def _kv_table(rows: List[List[str]], label_width: float = 50 * mm, width: float = CONTENT_WIDTH, compact: bool = False) -> Table:
    label_style = CARD_LABEL_STYLE if compact else LABEL_STYLE
    value_style = CARD_BODY_STYLE if compact else BODY_STYLE
    table_rows = [[_para(label, label_style), _para(value, value_style)] for label, value in rows]
    padding = 2 if compact else 4

    table = Table(table_rows, colWidths=[label_width, width - label_width], hAlign="LEFT")
    table.setStyle(
        TableStyle(
            [
                ("TEXTCOLOR", (0, 0), (-1, -1), colors.black),
                ("ALIGN", (0, 0), (-1, -1), "LEFT"),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("BACKGROUND", (0, 0), (0, -1), colors.whitesmoke),
                ("LEFTPADDING", (0, 0), (-1, -1), padding),
                ("RIGHTPADDING", (0, 0), (-1, -1), padding),
                ("TOPPADDING", (0, 0), (-1, -1), padding),
                ("BOTTOMPADDING", (0, 0), (-1, -1), padding),
            ]
        )
    )
    return table


def _qr_drawing(payload: str, size: float) -> Drawing:
    widget = QrCodeWidget(payload)
    x1, y1, x2, y2 = widget.getBounds()
    drawing = Drawing(size, size, transform=[size / (x2 - x1), 0, 0, size / (y2 - y1), 0, 0])
    drawing.add(widget)
    return drawing


def _photo(path: str | None, width: float, height: float):
    if not path or not os.path.isfile(path):
        return _para("Photo", SMALL_STYLE)
    try:
        return Image(path, width=width, height=height)
    except OSError:
        return _para("Photo", SMALL_STYLE)


def _format_date(value) -> str:
    if not value:
        return ""
    return value.strftime("%d %B %Y")


def org_context() -> Dict[str, str]:
    config = current_app.config
    return {
        "name": config.get("ORG_NAME", ""),
        "address": config.get("ORG_ADDRESS", ""),
        "website": config.get("ORG_WEBSITE", ""),
        "phone": config.get("ORG_PHONE", ""),
        "signer_name": config.get("SIGNER_NAME", ""),
        "signer_designation": config.get("SIGNER_DESIGNATION", ""),
    }


def member_snapshot(membership) -> Dict:
    """Plain copy of everything the renderers read, safe to hand to a worker thread."""
    address = ", ".join(
        part
        for part in (
            membership.house_no,
            membership.street,
            membership.village,
            membership.panchayat,
            membership.block,
            membership.district,
            membership.state,
            membership.pincode,
        )
        if part
    )
    return {
        "full_name": membership.full_name,
        "father_name": membership.father_name,
        "dob": _format_date(membership.dob),
        "gender": membership.gender,
        "mobile": membership.mobile,
        "email": membership.email,
        "blood_group": membership.blood_group,
        "address": address,
        "district": membership.district,
        "block": membership.block,
        "membership_id": membership.membership_id or f"TEMP/{int(time.time())}",
        "designation": membership.designation,
        "photo_path": membership.photo_path,
        "accepted_on": _format_date(membership.updated_at or datetime.utcnow()),
    }


def _document(buffer: io.BytesIO, title: str, pagesize=A4, margin: float = PAGE_MARGIN) -> SimpleDocTemplate:
    return SimpleDocTemplate(
        buffer,
        pagesize=pagesize,
        leftMargin=margin,
        rightMargin=margin,
        topMargin=margin,
        bottomMargin=margin,
        title=title,
    )


def _letterhead(org: Dict[str, str]) -> List:
    return [
        Paragraph(escape(org["name"]), TITLE_STYLE),
        Paragraph(escape(org["address"]), SUBTITLE_STYLE),
        Paragraph(escape(" | ".join(v for v in (org["website"], org["phone"]) if v and v != "N/A")), SUBTITLE_STYLE),
        Spacer(1, 10),
    ]


def render_joining_letter(member, qr_payload: str, org: Dict[str, str] | None = None) -> bytes:
    if not isinstance(member, dict):
        member = member_snapshot(member)
    org = org or org_context()
    buffer = io.BytesIO()
    doc = _document(buffer, f"Joining Letter - {member['membership_id']}")

    story: List = _letterhead(org)
    story.append(_para(f"Ref: {member['membership_id']}", LABEL_STYLE))
    story.append(_para(f"Date: {member['accepted_on']}", BODY_STYLE))
    story.append(Spacer(1, 8))
    story.append(Paragraph("Joining Letter", HEADING_STYLE))
    story.append(
        _para(
            f"Dear {member['full_name']},\n\n"
            f"We are pleased to confirm your membership of {org['name']} as {member['designation']}. "
            "You are expected to uphold the aims of the organisation and act within its constitution.",
            BODY_STYLE,
        )
    )
    story.append(Spacer(1, 10))
    story.append(
        _kv_table(
            [
                ["Membership ID", member["membership_id"]],
                ["Name", member["full_name"]],
                ["Father's Name", member["father_name"]],
                ["Date of Birth", member["dob"]],
                ["Mobile", member["mobile"]],
                ["Address", member["address"]],
                ["Designation", member["designation"]],
            ]
        )
    )
    story.append(Spacer(1, 14))

    qr_cell = [_qr_drawing(qr_payload, 30 * mm), _para("Scan to verify membership", SMALL_STYLE)]
    signature_cell = [
        Spacer(1, 18),
        _para(org["signer_name"], LABEL_STYLE),
        _para(org["signer_designation"], BODY_STYLE),
    ]
    footer = Table([[qr_cell, signature_cell]], colWidths=[CONTENT_WIDTH / 2, CONTENT_WIDTH / 2])
    footer.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "BOTTOM"), ("ALIGN", (1, 0), (1, 0), "RIGHT")]))
    story.append(footer)

    doc.build(story)
    return buffer.getvalue()


def render_id_card(member, qr_payload: str, org: Dict[str, str] | None = None) -> bytes:
    if not isinstance(member, dict):
        member = member_snapshot(member)
    org = org or org_context()
    buffer = io.BytesIO()
    doc = _document(buffer, f"ID Card - {member['membership_id']}", pagesize=CARD_SIZE, margin=CARD_MARGIN)
    width = CARD_SIZE[0] - 2 * CARD_MARGIN

    story: List = [
        Paragraph(escape(org["name"]), ParagraphStyle(name="CardOrg", parent=TITLE_STYLE, fontSize=9, leading=11)),
        Paragraph("IDENTITY CARD", SUBTITLE_STYLE),
        Spacer(1, 4),
    ]
    photo = Table([[_photo(member["photo_path"], 25 * mm, 30 * mm)]], colWidths=[width])
    photo.setStyle(TableStyle([("ALIGN", (0, 0), (-1, -1), "CENTER")]))
    story.append(photo)
    story.append(Spacer(1, 3))
    story.append(_para(member["full_name"], CARD_NAME_STYLE))
    story.append(Spacer(1, 3))
    story.append(
        _kv_table(
            [
                ["ID", member["membership_id"]],
                ["Designation", member["designation"]],
                ["Father", member["father_name"]],
                ["Blood Group", member["blood_group"]],
                ["Mobile", member["mobile"]],
                ["District", member["district"]],
            ],
            label_width=22 * mm,
            width=width,
            compact=True,
        )
    )
    story.append(Spacer(1, 4))
    qr = Table([[_qr_drawing(qr_payload, 20 * mm)]], colWidths=[width])
    qr.setStyle(TableStyle([("ALIGN", (0, 0), (-1, -1), "CENTER")]))
    story.append(qr)
    story.append(_para(f"{org['signer_name']}, {org['signer_designation']}", SMALL_STYLE))

    doc.build(story)
    return buffer.getvalue()


def render_fallback_letter(member, org: Dict[str, str] | None = None) -> bytes:
    """Minimal letter used when the full joining letter cannot be produced."""
    if not isinstance(member, dict):
        member = member_snapshot(member)
    org = org or org_context()
    buffer = io.BytesIO()
    doc = _document(buffer, f"Membership Confirmation - {member['membership_id']}")
    story: List = [
        Paragraph(escape(org["name"]), TITLE_STYLE),
        Spacer(1, 12),
        Paragraph("Membership Confirmation", HEADING_STYLE),
        _para(f"Name: {member['full_name']}"),
        _para(f"Membership ID: {member['membership_id']}"),
        _para(f"Date: {member['accepted_on']}"),
        Spacer(1, 8),
        _para("Your membership has been accepted. The full joining letter can be downloaded later.", BODY_STYLE),
    ]
    doc.build(story)
    return buffer.getvalue()


def _run_with_timeout(render_fn: Callable[..., bytes], args: tuple, timeout: float) -> bytes:
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pdf-render")
    future = executor.submit(render_fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        raise PdfRenderError(f"render timed out after {timeout}s") from exc
    finally:
        executor.shutdown(wait=False)


def render_with_retry(render_fn: Callable[..., bytes], *args, label: str = "document") -> bytes:
    config = current_app.config
    attempts = max(1, int(config.get("PDF_RETRY", 3)))
    backoff_ms = int(config.get("PDF_BACKOFF_MS", 500))
    timeout = float(config.get("PDF_TIMEOUT_SECONDS", 30))

    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            data = _run_with_timeout(render_fn, args, timeout)
            if not data:
                raise PdfRenderError("renderer returned an empty document")
            return data
        except Exception as exc:
            last_error = exc
            current_app.logger.warning(
                "PDF render attempt failed",
                extra={"label": label, "attempt": attempt, "attempts": attempts, "error": str(exc)},
            )
            if attempt < attempts and backoff_ms:
                time.sleep(backoff_ms * attempt / 1000.0)
    raise PdfRenderError(f"{label} failed after {attempts} attempts: {last_error}")


def build_joining_letter(membership, qr_payload: str) -> tuple[bytes, str | None]:
    """Return ``(pdf_bytes, primary_error)``.

    ``primary_error`` is None when the full letter rendered, otherwise the reason the plain fallback
    letter was used. Raises ExternalServiceError only if the fallback fails too.
    """
    member = member_snapshot(membership)
    org = org_context()
    try:
        return render_with_retry(render_joining_letter, member, qr_payload, org, label="joining_letter"), None
    except PdfRenderError as exc:
        primary_error = str(exc)
        current_app.logger.error("Joining letter failed, using fallback", extra={"membership": member["membership_id"], "error": primary_error})
    try:
        return render_fallback_letter(member, org), primary_error
    except Exception as exc:
        raise ExternalServiceError("Joining letter could not be generated") from exc


def build_id_card(membership, qr_payload: str) -> bytes:
    member = member_snapshot(membership)
    try:
        return render_with_retry(render_id_card, member, qr_payload, org_context(), label="id_card")
    except PdfRenderError as exc:
        raise ExternalServiceError("ID card could not be generated") from exc


def store_pdf(data: bytes, filename: str) -> str:
    output_dir = Path(current_app.config.get("PDF_OUTPUT_DIR") or os.path.join(current_app.instance_path, "pdfs"))
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / filename
    path.write_bytes(data)
    return str(path)


def load_pdf(path: str | None) -> bytes | None:
    if not path or not os.path.isfile(path):
        return None
    with open(path, "rb") as handle:
        return handle.read()
