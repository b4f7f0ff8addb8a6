import pytest

from config import Settings
from email_service import ConsoleTransport, EmailService, ResendTransport, SmtpTransport, build_transport
from errors import EmailDeliveryError


def test_build_transport():
    assert isinstance(build_transport(Settings()), ConsoleTransport)
    assert isinstance(build_transport(Settings(email_provider="resend", resend_api_key="re_x")), ResendTransport)
    assert isinstance(build_transport(Settings(email_provider="smtp", smtp_host="mail.local")), SmtpTransport)
    with pytest.raises(ValueError):
        build_transport(Settings(email_provider="pigeon"))


def test_unconfigured_transports_fail_loudly():
    service = EmailService(Settings(email_provider="resend"))

    assert service.get_status()["status"] == "unhealthy"
    with pytest.raises(EmailDeliveryError):
        service.send_welcome_email("pat@shopper.io", "Pat")


def test_tokens_are_long_and_unique():
    tokens = {EmailService.generate_verification_token() for _ in range(20)}
    assert len(tokens) == 20
    assert all(len(t) == 64 for t in tokens)
    assert len(EmailService.generate_reset_token()) == 64


def test_verification_mail_links_to_frontend(mailer, transport):
    result = mailer.send_verification_email("pat@shopper.io", "Pat", "abc123")

    assert result == {"success": True, "message_id": "rec-1"}
    message = transport.sent[0]
    assert message["to"] == ["pat@shopper.io"]
    assert message["from"] == "Storefront <no-reply@storefront.local>"
    assert "http://shop.test/verify-email?token=abc123" in message["html"]


def test_order_confirmation_lists_items(mailer, transport):
    order = {
        "order_number": "ORD-123456ABCDEF",
        "items": [{"name": "Cap", "quantity": 2, "price": 12.5}],
        "total": 25.0,
        "currency": "EUR",
    }
    mailer.send_order_confirmation_email("pat@shopper.io", "Pat", order)

    html = transport.sent[0]["html"]
    assert "Cap" in html
    assert "EUR 25.00" in html
    assert "5-7 business days" in html


def test_bulk_send_reports_failures(mailer, transport):
    results = mailer.send_bulk_emails(["a@shopper.io", "b@shopper.io"], "News", "<p>hi</p>", batch_size=1, delay=0)
    assert [r["success"] for r in results] == [True, True]

    transport.fail = True
    results = mailer.send_bulk_emails(["c@shopper.io"], "News", "<p>hi</p>")
    assert results == [{"success": False, "email": "c@shopper.io", "error": "transport down"}]


def test_console_transport_logs(caplog):
    service = EmailService(Settings())
    with caplog.at_level("INFO"):
        result = service.send_custom_email("pat@shopper.io", "Hello", "<p>hi</p>")

    assert result["message_id"].startswith("console-")
    assert "Email to pat@shopper.io: Hello" in caplog.text
    assert service.get_status()["status"] == "healthy"
