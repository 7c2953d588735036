"""PDF receipts for transactions, drawn with reportlab."""

from io import BytesIO
from typing import Any, Dict

from reportlab.lib.pagesizes import letter
from reportlab.lib.units import inch
from reportlab.pdfgen import canvas

import settings


def money(value: Any) -> str:
    return f"${float(value or 0):,.2f}"


def fmt_date(value) -> str:
    return value.strftime("%B %d, %Y %H:%M") if value else "-"


class ReceiptRenderer:
    def __init__(self, store_name: str = settings.STORE_NAME):
        self.store_name = store_name

    def render(self, transaction: Dict[str, Any]) -> bytes:
        buffer = BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=letter)
        width, height = letter
        y = height - inch

        pdf.setFont("Helvetica-Bold", 20)
        pdf.drawString(inch, y, self.store_name)
        y -= 0.35 * inch
        pdf.setFont("Helvetica", 11)
        pdf.drawString(inch, y, "Order Receipt")
        y -= 0.4 * inch

        tx_id = str(transaction.get("_id") or transaction.get("id", ""))
        for label, value in (
            ("Order", f"#{tx_id}"),
            ("Customer", transaction.get("email", "")),
            ("Placed", fmt_date(transaction.get("created_at"))),
            ("Completed", fmt_date(transaction.get("completed_at"))),
            ("Status", str(transaction.get("status", "")).upper()),
        ):
            pdf.drawString(inch, y, f"{label}: {value}")
            y -= 0.25 * inch

        y -= 0.2 * inch
        pdf.setFont("Helvetica-Bold", 11)
        pdf.drawString(inch, y, "Item")
        pdf.drawString(4.5 * inch, y, "Qty")
        pdf.drawRightString(width - inch, y, "Amount")
        y -= 0.1 * inch
        pdf.line(inch, y, width - inch, y)
        y -= 0.25 * inch

        pdf.setFont("Helvetica", 11)
        for item in transaction.get("items", []):
            if y < 1.5 * inch:
                pdf.showPage()
                pdf.setFont("Helvetica", 11)
                y = height - inch
            qty = int(item.get("quantity", 1))
            pdf.drawString(inch, y, str(item.get("name", ""))[:50])
            pdf.drawString(4.5 * inch, y, str(qty))
            pdf.drawRightString(width - inch, y, money(float(item.get("price", 0)) * qty))
            y -= 0.25 * inch

        y -= 0.1 * inch
        pdf.line(3.5 * inch, y, width - inch, y)
        y -= 0.25 * inch
        for label in ("subtotal", "tax", "shipping", "total"):
            if label == "total":
                pdf.setFont("Helvetica-Bold", 12)
            pdf.drawString(3.5 * inch, y, label.capitalize())
            pdf.drawRightString(width - inch, y, money(transaction.get(label)))
            y -= 0.25 * inch

        pdf.setFont("Helvetica-Oblique", 9)
        pdf.drawString(inch, 0.75 * inch, f"Thank you for shopping with {self.store_name}.")
        pdf.showPage()
        pdf.save()
        return buffer.getvalue()
