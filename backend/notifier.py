import time
from datetime import datetime
from html import escape
from typing import Dict, List, Optional, Tuple

import resend

from .database import utcnow

NOT_CONFIGURED = "Email delivery is not configured."

DeliveryResult = Tuple[bool, Optional[str]]


class EmailNotifier:
    """Transactional email over Resend.

    Sends never raise: every call returns ``(sent, error)`` so a failed
    delivery can be logged without failing the request that triggered it.
    """

    def __init__(
        self,
        api_key: Optional[str],
        sender: Optional[str],
        frontend_url: str = "http://localhost:5173",
        max_attempts: int = 3,
        backoff: float = 0.5,
        logger=None,
        store_name: str = "Grace Store",
    ):
        self.api_key = (api_key or "").strip()
        self.sender = (sender or "").strip()
        self.frontend_url = (frontend_url or "").rstrip("/")
        self.max_attempts = max(1, int(max_attempts))
        self.backoff = backoff
        self.logger = logger
        self.store_name = store_name

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.sender)

    def send_email_via_resend(self, payload: Dict[str, object]) -> DeliveryResult:
        if not self.configured:
            return False, NOT_CONFIGURED

        error_details: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            previous_api_key = getattr(resend, "api_key", None)
            resend.api_key = self.api_key
            try:
                response = resend.Emails.send(payload)
            except Exception as exc:
                response = None
                error_details = str(exc)
            finally:
                resend.api_key = previous_api_key

            if isinstance(response, dict) and response.get("id"):
                return True, None
            if response is not None:
                error_details = str(response)

            if self.logger is not None:
                self.logger.error(
                    "Email delivery to %s failed (attempt %s/%s): %s",
                    payload.get("to"),
                    attempt,
                    self.max_attempts,
                    error_details,
                )
            if attempt < self.max_attempts and self.backoff:
                time.sleep(self.backoff * (2 ** (attempt - 1)))

        return False, error_details or "Unknown delivery error"

    def _payload(self, recipient: str, subject: str, html: str, text: str) -> Dict[str, object]:
        return {
            "from": f"{self.store_name} <{self.sender}>",
            "to": [recipient],
            "subject": subject,
            "html": html,
            "text": text,
        }

    def _wrap_html(self, heading: str, body_html: str) -> str:
        return f"""<!DOCTYPE html>
<html lang="en">
  <body style="margin:0;padding:32px 16px;background:#f6f5f2;font-family:'Segoe UI','Helvetica Neue',Arial,sans-serif;color:#222;">
    <div style="max-width:560px;margin:0 auto;background:#fff;border-radius:16px;padding:36px;">
      <p style="margin:0 0 8px 0;text-transform:uppercase;letter-spacing:0.3em;font-size:12px;color:#8a7b5c;">{escape(self.store_name)}</p>
      <h1 style="margin:0 0 16px 0;font-size:22px;">{escape(heading)}</h1>
      {body_html}
      <p style="margin:32px 0 0 0;font-size:13px;color:#777;">Regards,<br />The {escape(self.store_name)} Team</p>
    </div>
  </body>
</html>"""

    def _link_html(self, url: str, label: str) -> str:
        return (
            f'<p style="margin:24px 0;"><a href="{escape(url)}" '
            'style="display:inline-block;padding:12px 24px;border-radius:10px;'
            f'background:#222;color:#fff;text-decoration:none;">{escape(label)}</a></p>'
        )

    def verification_link(self, token: str) -> str:
        return f"{self.frontend_url}/verify-email?token={token}"

    def reset_link(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={token}"

    def send_welcome(self, recipient: str, name: Optional[str]) -> DeliveryResult:
        greeting = f"Welcome, {name}!" if name else "Welcome!"
        html = self._wrap_html(
            greeting,
            f"<p>Thanks for creating an account at {escape(self.store_name)}. "
            "We are glad to have you.</p>",
        )
        text = f"{greeting} Thanks for creating an account at {self.store_name}."
        return self.send_email_via_resend(
            self._payload(recipient, f"Welcome to {self.store_name}", html, text)
        )

    def send_verification(self, recipient: str, token: str, hours: int = 24) -> DeliveryResult:
        link = self.verification_link(token)
        html = self._wrap_html(
            "Verify your email address",
            f"<p>Confirm your email address within {hours} hours to finish setting up "
            "your account.</p>" + self._link_html(link, "Verify email"),
        )
        text = f"Verify your email address within {hours} hours: {link}"
        return self.send_email_via_resend(
            self._payload(recipient, "Verify your email address", html, text)
        )

    def send_password_reset(self, recipient: str, token: str, hours: int = 1) -> DeliveryResult:
        link = self.reset_link(token)
        html = self._wrap_html(
            "Reset your password",
            f"<p>Use the link below within {hours} hour(s) to choose a new password. "
            "If you did not ask for this you can ignore this email.</p>"
            + self._link_html(link, "Reset password"),
        )
        text = f"Reset your password within {hours} hour(s): {link}"
        return self.send_email_via_resend(
            self._payload(recipient, "Reset your password", html, text)
        )

    def send_order_confirmation(
        self, recipient: str, order_document: Dict[str, object], currency: str = "PKR"
    ) -> DeliveryResult:
        if not recipient:
            return False, "Missing customer email for the order receipt."

        items: List[Dict] = [
            entry for entry in order_document.get("items") or [] if isinstance(entry, dict)
        ]
        currency_code = str(currency or "").upper()
        total_value = float(order_document.get("totalAmount") or 0)
        order_identifier = str(order_document.get("_id") or "").strip() or "Order"

        created_at_value = order_document.get("createdAt")
        if not isinstance(created_at_value, datetime):
            created_at_value = utcnow()

        rows = "".join(
            f"<tr><td>{escape(str(item.get('productId')))}</td>"
            f"<td style=\"text-align:center;\">{item.get('quantity')}</td>"
            f"<td style=\"text-align:right;\">{currency_code} {float(item.get('price') or 0):.2f}</td></tr>"
            for item in items
        )
        html = self._wrap_html(
            "Thank you for your purchase",
            f"<p>Order {escape(order_identifier)} placed on "
            f"{created_at_value.strftime('%Y-%m-%d %H:%M')}.</p>"
            f'<table width="100%" cellpadding="6" style="border-collapse:collapse;">{rows}</table>'
            f"<p><strong>Total: {currency_code} {total_value:.2f}</strong></p>",
        )
        item_lines = ", ".join(
            f"{item.get('productId')} x{item.get('quantity')} "
            f"({currency_code} {float(item.get('price') or 0):.2f})"
            for item in items
        )
        text = (
            f"Thank you for your purchase! Order {order_identifier} on "
            f"{created_at_value.strftime('%Y-%m-%d %H:%M')}.\n"
            f"Items: {item_lines}.\n"
            f"Total: {currency_code} {total_value:.2f}.\n\n"
            f"{self.store_name} Team"
        )
        return self.send_email_via_resend(
            self._payload(recipient, "Thank you for your purchase", html, text)
        )
