"""Offer and invoice documents rendered with python-docx."""
import io
import logging
from datetime import datetime
from typing import Optional

from docx import Document as DocxDocument
from docx.enum.table import WD_TABLE_ALIGNMENT
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.oxml import parse_xml
from docx.oxml.ns import nsdecls
from docx.shared import Inches, Pt, RGBColor

from app.database import utcnow
from app.models.company import Company
from app.models.invoice import Invoice
from app.models.lead import Lead
from app.schemas.offer import OfferPricing

logger = logging.getLogger(__name__)

PRIMARY = RGBColor(0x1E, 0x3A, 0x5F)
DARK = RGBColor(0x1F, 0x29, 0x37)
GREY = RGBColor(0x4B, 0x55, 0x63)
TABLE_HEADER_BG = "1E3A5F"
TABLE_ROW_ALT_BG = "F1F5F9"
BODY_FONT = "Calibri"


def _new_document():
    doc = DocxDocument()
    for section in doc.sections:
        section.top_margin = Inches(0.8)
        section.bottom_margin = Inches(0.8)
        section.left_margin = Inches(1)
        section.right_margin = Inches(1)

    style = doc.styles["Normal"]
    style.font.name = BODY_FONT
    style.font.size = Pt(11)
    style.font.color.rgb = GREY
    style.paragraph_format.space_after = Pt(6)
    return doc


def _header(doc, company: Company, title: str, subtitle: str):
    p = doc.add_paragraph()
    run = p.add_run(company.name)
    run.font.size = Pt(20)
    run.font.bold = True
    run.font.color.rgb = PRIMARY

    p = doc.add_paragraph()
    run = p.add_run(title)
    run.font.size = Pt(16)
    run.font.bold = True
    run.font.color.rgb = DARK

    p = doc.add_paragraph()
    run = p.add_run(subtitle)
    run.font.size = Pt(10)
    run.font.color.rgb = GREY

    # Colored rule under the header
    p = doc.add_paragraph()
    pPr = p._element.get_or_add_pPr()
    pPr.append(parse_xml(
        f'<w:pBdr {nsdecls("w")}>'
        f'  <w:bottom w:val="single" w:sz="12" w:space="1" w:color="{TABLE_HEADER_BG}"/>'
        f'</w:pBdr>'
    ))


def _styled_table(doc, headers, rows_data):
    table = doc.add_table(rows=1 + len(rows_data), cols=len(headers))
    table.alignment = WD_TABLE_ALIGNMENT.CENTER

    for i, header_text in enumerate(headers):
        cell = table.rows[0].cells[i]
        cell.text = ""
        run = cell.paragraphs[0].add_run(header_text)
        run.font.size = Pt(10)
        run.font.bold = True
        run.font.color.rgb = RGBColor(0xFF, 0xFF, 0xFF)
        cell._tc.get_or_add_tcPr().append(
            parse_xml(f'<w:shd {nsdecls("w")} w:fill="{TABLE_HEADER_BG}" w:val="clear"/>')
        )

    for r_idx, row_data in enumerate(rows_data):
        bg = TABLE_ROW_ALT_BG if r_idx % 2 == 0 else "FFFFFF"
        for c_idx, value in enumerate(row_data):
            cell = table.rows[r_idx + 1].cells[c_idx]
            cell.text = ""
            run = cell.paragraphs[0].add_run(str(value))
            run.font.size = Pt(10)
            cell._tc.get_or_add_tcPr().append(
                parse_xml(f'<w:shd {nsdecls("w")} w:fill="{bg}" w:val="clear"/>')
            )
    doc.add_paragraph()
    return table


def _totals(doc, pricing: OfferPricing):
    for label, value, bold in (
        ("Subtotal", pricing.subtotal, False),
        (f"Tax ({pricing.tax_rate * 100:.0f}%)", pricing.tax_amount, False),
        ("Total", pricing.total_amount, True),
    ):
        p = doc.add_paragraph()
        p.alignment = WD_ALIGN_PARAGRAPH.RIGHT
        run = p.add_run(f"{label}: {value:,.2f}")
        run.font.bold = bold
        run.font.color.rgb = DARK if bold else GREY


def _to_bytes(doc) -> bytes:
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


def render_offer(
    company: Company,
    lead: Lead,
    product_name: str,
    pricing: OfferPricing,
    summary: Optional[str] = None,
    issued_on: Optional[datetime] = None,
) -> bytes:
    """Commercial offer for one product line, returned as .docx bytes."""
    issued_on = issued_on or utcnow()
    doc = _new_document()
    _header(doc, company, "Commercial Offer", f"For {lead.company_name}  |  {issued_on.strftime('%d %B %Y')}")

    doc.add_paragraph(f"Dear {lead.contact_name},")
    if summary:
        doc.add_paragraph(summary)

    _styled_table(
        doc,
        ["Product / service", "Quantity", "Unit price", "Amount"],
        [[product_name, pricing.quantity, f"{pricing.unit_price:,.2f}", f"{pricing.subtotal:,.2f}"]],
    )
    _totals(doc, pricing)

    p = doc.add_paragraph()
    run = p.add_run("This offer is valid for 30 days from the date of issue.")
    run.font.size = Pt(9)
    run.italic = True

    if company.sender_name:
        doc.add_paragraph(f"Kind regards,\n{company.sender_name}\n{company.name}")

    logger.info("Rendered offer document for lead %s (%s x%d)", lead.id, product_name, pricing.quantity)
    return _to_bytes(doc)


def render_invoice(company: Company, invoice: Invoice, product_name: str, quantity: int) -> bytes:
    """Invoice document for an issued invoice row, returned as .docx bytes."""
    doc = _new_document()
    _header(
        doc,
        company,
        f"Invoice {invoice.invoice_number}",
        f"Issued {invoice.created_at.strftime('%d %B %Y')}  |  Billed to {invoice.customer_name}",
    )

    unit_price = invoice.subtotal / quantity if quantity else invoice.subtotal
    pricing = OfferPricing(
        quantity=quantity,
        unit_price=round(unit_price, 2),
        tax_rate=invoice.tax_rate,
        subtotal=invoice.subtotal,
        tax_amount=invoice.tax_amount,
        total_amount=invoice.total_amount,
    )
    _styled_table(
        doc,
        ["Description", "Quantity", "Unit price", "Amount"],
        [[product_name or "Services", quantity, f"{pricing.unit_price:,.2f}", f"{invoice.subtotal:,.2f}"]],
    )
    _totals(doc, pricing)
    doc.add_paragraph("Payment due within 14 days. Please quote the invoice number with your payment.")
    return _to_bytes(doc)
