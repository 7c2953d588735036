"""
Order notifications: status emails with a PDF receipt.

Everything here runs after a status change has been committed. Failures
are folded into a NotificationOutcome and never raised to the caller.
"""

import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from email.utils import make_msgid
from html import escape
from typing import Any, Dict, List, Optional

import settings
from log import get_logger
from receipts import ReceiptRenderer, money
from schemas import NotificationOutcome, TransactionStatus

logger = get_logger(__name__)


# ----------------------------------------------------------------------------
# Mail transport
# ----------------------------------------------------------------------------

class Mailer(ABC):
    """Abstract interface for email dispatch."""

    configured = True

    @abstractmethod
    def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> dict:
        """Send an email message.

        Attachments are dicts with filename, content (bytes) and mimetype.

        Returns:
            dict with keys: message_id, status ("sent", "failed" or
            "not_configured"), error (optional)
        """
        ...


class UnconfiguredMailer(Mailer):
    """Stands in when no SMTP credentials are present."""

    configured = False

    def send(self, to, subject, html_body, text_body, attachments=None) -> dict:
        logger.info("mail_not_configured", to=to, subject=subject)
        return {"message_id": None, "status": "not_configured", "error": "Email is not configured"}


class SmtpMailer(Mailer):
    def __init__(self, host: str, port: int, user: str, password: str, sender: str):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender

    def build_message(self, to, subject, html_body, text_body, attachments=None) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")
        for attachment in attachments or []:
            maintype, subtype = attachment.get("mimetype", "application/octet-stream").split("/", 1)
            msg.add_attachment(
                attachment["content"],
                maintype=maintype,
                subtype=subtype,
                filename=attachment["filename"],
            )
        return msg

    def send(self, to, subject, html_body, text_body, attachments=None) -> dict:
        msg = self.build_message(to, subject, html_body, text_body, attachments)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=15) as server:
                server.starttls()
                server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("mail_send_failed", to=to, error=str(e))
            return {"message_id": None, "status": "failed", "error": str(e)}
        logger.info("mail_sent", to=to, subject=subject)
        return {"message_id": msg["Message-ID"], "status": "sent"}


def build_mailer() -> Mailer:
    if settings.SMTP_HOST and settings.SMTP_USER and settings.SMTP_PASSWORD:
        return SmtpMailer(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            settings.SMTP_USER,
            settings.SMTP_PASSWORD,
            settings.MAIL_FROM,
        )
    return UnconfiguredMailer()


# ----------------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------------

STATUS_COPY = {
    TransactionStatus.PENDING.value: (
        "We received your order #{id}",
        "Your order is being processed. We'll let you know as soon as it is complete.",
    ),
    TransactionStatus.COMPLETED.value: (
        "Your receipt for order #{id}",
        "Your order is complete. Your receipt is attached to this email.",
    ),
    TransactionStatus.CANCELLED.value: (
        "Order #{id} has been cancelled",
        "Your order has been cancelled. If this is unexpected, please reply to this email.",
    ),
    TransactionStatus.FAILED.value: (
        "There was a problem with order #{id}",
        "We could not complete your order. No charge has been made.",
    ),
}


def render_status_email(transaction: Dict[str, Any], store_name: str = settings.STORE_NAME) -> Dict[str, str]:
    """Return subject, html and text bodies for the transaction's current status."""
    tx_id = str(transaction.get("_id") or transaction.get("id", ""))
    subject_tpl, lead = STATUS_COPY[transaction["status"]]
    subject = f"{store_name}: " + subject_tpl.format(id=tx_id)

    rows = []
    lines = []
    for item in transaction.get("items", []):
        qty = int(item.get("quantity", 1))
        amount = money(float(item.get("price", 0)) * qty)
        rows.append(
            f"<tr><td>{escape(str(item.get('name', '')))}</td>"
            f"<td style=\"text-align:center\">{qty}</td>"
            f"<td style=\"text-align:right\">{amount}</td></tr>"
        )
        lines.append(f"  {item.get('name', '')} x{qty}  {amount}")

    totals = [(label.capitalize(), money(transaction.get(label))) for label in ("subtotal", "tax", "shipping", "total")]

    html_body = (
        f"<html><body style=\"font-family:Georgia,serif;color:#333\">"
        f"<h2 style=\"color:#8b6914\">{escape(store_name)}</h2>"
        f"<p>{escape(lead)}</p>"
        f"<p><strong>Order:</strong> #{escape(tx_id)}<br>"
        f"<strong>Status:</strong> {escape(transaction['status'].upper())}</p>"
        f"<table cellpadding=\"6\" style=\"border-collapse:collapse;width:100%\">"
        f"<tr><th align=\"left\">Item</th><th>Qty</th><th align=\"right\">Amount</th></tr>"
        + "".join(rows)
        + "".join(f"<tr><td colspan=\"2\" align=\"right\">{k}</td><td align=\"right\">{v}</td></tr>" for k, v in totals)
        + "</table>"
        f"<p>Thank you for shopping with {escape(store_name)}.</p>"
        "</body></html>"
    )
    text_body = "\n".join(
        [store_name, "", lead, "", f"Order: #{tx_id}", f"Status: {transaction['status'].upper()}", ""]
        + lines
        + [""]
        + [f"  {k}: {v}" for k, v in totals]
        + ["", f"Thank you for shopping with {store_name}."]
    )
    return {"subject": subject, "html": html_body, "text": text_body}


# ----------------------------------------------------------------------------
# Post-commit hook
# ----------------------------------------------------------------------------

class OrderNotifier:
    def __init__(self, mailer: Mailer, renderer: ReceiptRenderer, store_name: str = settings.STORE_NAME):
        self.mailer = mailer
        self.renderer = renderer
        self.store_name = store_name

    def notify(self, transaction: Dict[str, Any]) -> NotificationOutcome:
        """Email the customer about the transaction's (already persisted) status."""
        tx_id = str(transaction.get("_id") or transaction.get("id", ""))
        try:
            message = render_status_email(transaction, self.store_name)
        except Exception as e:
            logger.exception("status_email_render_failed", transaction_id=tx_id)
            return NotificationOutcome(sent=False, status="failed", error=f"Could not render email: {e}")

        attachments = []
        receipt_error = None
        if transaction["status"] == TransactionStatus.COMPLETED.value:
            try:
                attachments.append(
                    {
                        "filename": f"receipt-{tx_id}.pdf",
                        "content": self.renderer.render(transaction),
                        "mimetype": "application/pdf",
                    }
                )
            except Exception as e:
                logger.warning("receipt_render_failed", transaction_id=tx_id, error=str(e))
                receipt_error = f"Receipt could not be generated: {e}"

        try:
            result = self.mailer.send(
                transaction["email"], message["subject"], message["html"], message["text"], attachments
            )
        except Exception as e:
            logger.warning("mail_dispatch_failed", transaction_id=tx_id, error=str(e))
            result = {"message_id": None, "status": "failed", "error": str(e)}

        status = result.get("status", "failed")
        return NotificationOutcome(
            sent=status == "sent",
            status=status,
            error=result.get("error") or receipt_error,
            message_id=result.get("message_id"),
        )
