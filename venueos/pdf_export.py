from io import BytesIO
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from .config import settings


def _gbp(value) -> str:
    return f"£{float(value or 0):,.2f}"


def build_invoice_pdf(invoice) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)

    width, height = A4
    y = height - 50

    c.setFont("Helvetica-Bold", 16)
    c.drawString(40, y, f"{settings.VENUE_NAME} - Invoice {invoice.invoice_number}")
    y -= 30

    c.setFont("Helvetica", 11)
    vendor = invoice.vendor
    c.drawString(40, y, f"To: {vendor.name if vendor else '-'}")
    y -= 16
    if vendor and vendor.address:
        c.drawString(40, y, vendor.address[:100])
        y -= 16
    c.drawString(40, y, f"Invoice date: {invoice.invoice_date.isoformat()}")
    y -= 16
    c.drawString(40, y, f"Due date: {invoice.due_date.isoformat()}")
    y -= 16
    if invoice.reference:
        c.drawString(40, y, f"Reference: {invoice.reference[:80]}")
        y -= 16
    c.drawString(40, y, f"Status: {invoice.status}")
    y -= 28

    c.setFont("Helvetica-Bold", 11)
    c.drawString(40, y, "Description")
    c.drawString(320, y, "Qty")
    c.drawString(370, y, "Unit")
    c.drawString(440, y, "VAT")
    c.drawString(490, y, "Total")
    y -= 18

    c.setFont("Helvetica", 10)
    for item in invoice.line_items:
        c.drawString(40, y, item.description[:48])
        c.drawString(320, y, f"{float(item.quantity):g}")
        c.drawString(370, y, _gbp(item.unit_price))
        c.drawString(440, y, f"{float(item.vat_rate):g}%")
        c.drawString(490, y, _gbp(item.total_amount))
        y -= 16

        if y < 120:
            c.showPage()
            y = height - 50
            c.setFont("Helvetica", 10)

    y -= 12
    c.setFont("Helvetica", 11)
    for label, value in (
        ("Subtotal", invoice.subtotal_amount),
        ("Discount", invoice.discount_amount),
        ("VAT", invoice.vat_amount),
        ("Total", invoice.total_amount),
        ("Paid", invoice.paid_amount),
    ):
        c.drawString(370, y, label)
        c.drawString(490, y, _gbp(value))
        y -= 16

    if invoice.notes:
        y -= 10
        c.drawString(40, y, invoice.notes[:110])

    c.showPage()
    c.save()
    return buf.getvalue()
