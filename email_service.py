"""
Transactional email.

``EmailService`` renders the message bodies and hands them to a transport:
resend (HTTP API), plain SMTP, or a console transport that only logs, which
is the default for local development.
"""
import logging
import secrets
import smtplib
import time
from email.message import EmailMessage
from typing import Dict, List, Optional

import resend

from config import Settings
from database import utcnow
from errors import EmailDeliveryError

logger = logging.getLogger(__name__)


class ConsoleTransport:
    name = "console"

    def send(self, message: Dict[str, object]) -> str:
        message_id = f"console-{secrets.token_hex(8)}"
        logger.info("Email to %s: %s (%s)", ", ".join(message["to"]), message["subject"], message_id)
        return message_id


class ResendTransport:
    name = "resend"

    def __init__(self, api_key: Optional[str]):
        self.api_key = (api_key or "").strip()

    def send(self, message: Dict[str, object]) -> str:
        if not self.api_key:
            raise EmailDeliveryError("Resend API key is not configured")
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(message)
        except Exception as e:
            raise EmailDeliveryError(f"Resend request failed: {e}")
        if not isinstance(response, dict) or not response.get("id"):
            raise EmailDeliveryError(f"Unexpected Resend response: {response}")
        return response["id"]


class SmtpTransport:
    name = "smtp"

    def __init__(self, host: Optional[str], port: int, user: Optional[str] = None,
                 password: Optional[str] = None, use_tls: bool = True):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls

    def send(self, message: Dict[str, object]) -> str:
        if not self.host:
            raise EmailDeliveryError("SMTP host is not configured")
        msg = EmailMessage()
        msg["From"] = message["from"]
        msg["To"] = ", ".join(message["to"])
        msg["Subject"] = message["subject"]
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(message["html"], subtype="html")
        message_id = f"<{secrets.token_hex(12)}@{self.host}>"
        msg["Message-ID"] = message_id
        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.user:
                    smtp.login(self.user, self.password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise EmailDeliveryError(f"SMTP delivery failed: {e}")
        return message_id


def build_transport(settings: Settings):
    provider = settings.email_provider
    if provider == "resend":
        return ResendTransport(settings.resend_api_key)
    if provider == "smtp":
        return SmtpTransport(settings.smtp_host, settings.smtp_port, settings.smtp_user,
                             settings.smtp_password, settings.smtp_use_tls)
    if provider == "console":
        return ConsoleTransport()
    raise ValueError(f"Unsupported email provider: {provider}")


def _layout(title: str, body: str) -> str:
    return f"""<html>
  <body style="font-family: Segoe UI, Roboto, sans-serif; background: #f5f5f5; padding: 24px;">
    <div style="max-width: 600px; margin: 0 auto; background: #fff; border-radius: 8px; overflow: hidden;">
      <div style="background: #111; color: #fff; padding: 24px;"><h2>{title}</h2></div>
      <div style="padding: 24px;">{body}</div>
    </div>
  </body>
</html>"""


def _button(url: str, label: str) -> str:
    return (f'<p><a href="{url}" style="display: inline-block; background: #111; color: #fff; '
            f'padding: 12px 24px; border-radius: 6px; text-decoration: none;">{label}</a></p>')


class EmailService:
    def __init__(self, settings: Settings, transport=None):
        self.settings = settings
        self.transport = transport or build_transport(settings)

    @property
    def support_email(self) -> str:
        return self.settings.support_email or self.settings.email_from

    @staticmethod
    def generate_verification_token() -> str:
        return secrets.token_hex(32)

    @staticmethod
    def generate_reset_token() -> str:
        return secrets.token_hex(32)

    def _send(self, to: str, subject: str, html: str, kind: str) -> Dict[str, object]:
        message = {
            "from": f"{self.settings.email_from_name} <{self.settings.email_from}>",
            "to": [to],
            "subject": subject,
            "html": html,
        }
        try:
            message_id = self.transport.send(message)
        except EmailDeliveryError as e:
            logger.error("Failed to send %s email: %s", kind, e.message)
            raise
        logger.info("Sent %s email (%s)", kind, message_id)
        return {"success": True, "message_id": message_id}

    def send_verification_email(self, email: str, name: str, token: str) -> Dict[str, object]:
        url = f"{self.settings.frontend_url}/verify-email?token={token}"
        html = _layout("Verify your email", (
            f"<p>Hi {name},</p><p>Please confirm your email address to finish setting up your account.</p>"
            f"{_button(url, 'Verify email')}"
            f"<p>The link expires in 24 hours. Questions? Contact {self.support_email}.</p>"
        ))
        return self._send(email, "Verify your account", html, "verification")

    def send_welcome_email(self, email: str, name: str) -> Dict[str, object]:
        url = f"{self.settings.frontend_url}/shop"
        html = _layout(f"Welcome, {name}!", (
            "<p>Your email is verified and your account is ready.</p>"
            f"{_button(url, 'Start shopping')}"
        ))
        return self._send(email, "Welcome aboard", html, "welcome")

    def send_password_reset_email(self, email: str, name: str, token: str) -> Dict[str, object]:
        url = f"{self.settings.frontend_url}/reset-password?token={token}"
        html = _layout("Reset your password", (
            f"<p>Hi {name},</p><p>We received a request to reset your password.</p>"
            f"{_button(url, 'Reset password')}"
            "<p>The link expires in 1 hour. If you did not ask for this, ignore this email.</p>"
        ))
        return self._send(email, "Reset your password", html, "password-reset")

    def send_order_confirmation_email(self, email: str, name: str, order: dict) -> Dict[str, object]:
        url = f"{self.settings.frontend_url}/orders/{order['order_number']}"
        rows = "".join(
            f"<tr><td>{i['name']}</td><td style='text-align:center'>{i['quantity']}</td>"
            f"<td style='text-align:right'>{i['price'] * i['quantity']:.2f}</td></tr>"
            for i in order.get("items", [])
        )
        delivery = order.get("estimated_delivery") or "5-7 business days"
        html = _layout(f"Order #{order['order_number']} confirmed", (
            f"<p>Hi {name}, thanks for your order.</p>"
            f"<table style='width:100%'>{rows}</table>"
            f"<p><strong>Total: {order.get('currency', 'USD')} {order['total']:.2f}</strong></p>"
            f"<p>Estimated delivery: {delivery}</p>"
            f"{_button(url, 'Track order')}"
        ))
        return self._send(email, f"Order Confirmation #{order['order_number']}", html, "order-confirmation")

    # custom and bulk mail have no route; they are for operator scripts
    def send_custom_email(self, to: str, subject: str, html: str) -> Dict[str, object]:
        return self._send(to, subject, html, "custom")

    def send_bulk_emails(self, emails: List[str], subject: str, html: str,
                         batch_size: int = 10, delay: float = 1.0) -> List[Dict[str, object]]:
        results = []
        for start in range(0, len(emails), batch_size):
            for email in emails[start:start + batch_size]:
                try:
                    results.append(self.send_custom_email(email, subject, html))
                except EmailDeliveryError as e:
                    results.append({"success": False, "email": email, "error": e.message})
            if start + batch_size < len(emails) and delay:
                time.sleep(delay)
        return results

    def get_status(self) -> Dict[str, object]:
        status = {"provider": self.transport.name, "timestamp": utcnow()}
        if isinstance(self.transport, ResendTransport) and not self.transport.api_key:
            return {**status, "status": "unhealthy", "error": "Resend API key is not configured"}
        if isinstance(self.transport, SmtpTransport) and not self.transport.host:
            return {**status, "status": "unhealthy", "error": "SMTP host is not configured"}
        return {**status, "status": "healthy"}
