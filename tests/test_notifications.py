import pytest

from notifications import OrderNotifier, SmtpMailer, UnconfiguredMailer, build_mailer, render_status_email
from receipts import ReceiptRenderer
from tests.conftest import FakeMailer

TRANSACTION = {
    "_id": "64b0000000000000000000aa",
    "email": "ada@example.com",
    "status": "completed",
    "items": [{"product_id": "p1", "name": "Oud <Nocturne>", "price": 30.0, "quantity": 2}],
    "subtotal": 60.0,
    "tax": 4.8,
    "shipping": 15.0,
    "total": 79.8,
}


class BrokenRenderer(ReceiptRenderer):
    def render(self, transaction):
        raise RuntimeError("font missing")


class ExplodingMailer(FakeMailer):
    def send(self, *args, **kwargs):
        raise ConnectionError("network down")


class TestTemplates:
    @pytest.mark.parametrize("status", ["pending", "completed", "cancelled", "failed"])
    def test_each_status_renders(self, status):
        message = render_status_email({**TRANSACTION, "status": status}, "Test Parfum")
        assert message["subject"].startswith("Test Parfum: ")
        assert "64b0000000000000000000aa" in message["subject"]
        assert "$79.80" in message["text"]
        assert status.upper() in message["html"]

    def test_html_escapes_item_names(self):
        message = render_status_email(TRANSACTION)
        assert "Oud &lt;Nocturne&gt;" in message["html"]
        assert "Oud <Nocturne> x2" in message["text"]


class TestReceipt:
    def test_renders_pdf(self):
        pdf = ReceiptRenderer(store_name="Test Parfum").render(TRANSACTION)
        assert pdf.startswith(b"%PDF")

    def test_many_lines_span_pages(self):
        items = [{"name": f"Sample {i}", "price": 5.0, "quantity": 1} for i in range(80)]
        assert ReceiptRenderer().render({**TRANSACTION, "items": items}).startswith(b"%PDF")


class TestOrderNotifier:
    def test_receipt_failure_still_sends_email(self):
        mailer = FakeMailer()
        outcome = OrderNotifier(mailer, BrokenRenderer()).notify(TRANSACTION)
        assert outcome.sent is True
        assert "Receipt could not be generated" in outcome.error
        assert mailer.sent_emails[0]["attachments"] == []

    def test_mailer_exception_becomes_outcome(self):
        outcome = OrderNotifier(ExplodingMailer(), ReceiptRenderer()).notify(TRANSACTION)
        assert outcome.sent is False
        assert outcome.status == "failed"
        assert "network down" in outcome.error

    def test_unconfigured(self):
        outcome = OrderNotifier(UnconfiguredMailer(), ReceiptRenderer()).notify(TRANSACTION)
        assert outcome.status == "not_configured"


class TestMailers:
    def test_build_mailer_without_credentials(self, monkeypatch):
        import settings

        monkeypatch.setattr(settings, "SMTP_HOST", None)
        assert isinstance(build_mailer(), UnconfiguredMailer)

    def test_build_mailer_with_credentials(self, monkeypatch):
        import settings

        monkeypatch.setattr(settings, "SMTP_HOST", "smtp.example.com")
        monkeypatch.setattr(settings, "SMTP_USER", "orders")
        monkeypatch.setattr(settings, "SMTP_PASSWORD", "secret")
        assert isinstance(build_mailer(), SmtpMailer)

    def test_smtp_message_has_both_bodies_and_attachment(self):
        mailer = SmtpMailer("smtp.example.com", 587, "orders", "secret", "orders@example.com")
        msg = mailer.build_message(
            "ada@example.com",
            "Receipt",
            "<p>hi</p>",
            "hi",
            [{"filename": "receipt.pdf", "content": b"%PDF-1.4", "mimetype": "application/pdf"}],
        )
        assert msg["To"] == "ada@example.com"
        assert msg["Message-ID"]
        attachments = list(msg.iter_attachments())
        assert attachments[0].get_filename() == "receipt.pdf"
        assert msg.get_body(preferencelist=("html",)).get_content().strip() == "<p>hi</p>"

    def test_smtp_failure_reported(self, monkeypatch):
        import smtplib

        def refuse(*args, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(smtplib, "SMTP", refuse)
        mailer = SmtpMailer("smtp.example.com", 587, "orders", "secret", "orders@example.com")
        result = mailer.send("ada@example.com", "Hi", "<p>hi</p>", "hi")
        assert result["status"] == "failed"
        assert "refused" in result["error"]
