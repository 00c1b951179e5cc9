"""
Receipt mailer.

Thin SMTP adapter. With EMAILS_ENABLED off (local development, tests) the
message is logged instead of sent.
"""
from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr

from storefront.api.errors import TerminalRejection, TransientDependencyError
from storefront.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceiptLine:
    product_name: str
    version_name: str
    amount_cents: int
    license_key: str | None = None


def _money(cents: int, currency: str) -> str:
    return f"{cents / 100:.2f} {currency.upper()}"


def render_receipt(
    *, order_id: int, currency: str, total_cents: int, lines: list[ReceiptLine]
) -> tuple[str, str]:
    """Returns (subject, plain text body)."""
    subject = f"Your receipt for order {order_id}"
    body = [f"Thanks for your purchase! Order {order_id}", ""]
    for line in lines:
        body.append(f"- {line.product_name} ({line.version_name}): {_money(line.amount_cents, currency)}")
        if line.license_key:
            body.append(f"  License key: {line.license_key}")
    body += ["", f"Total: {_money(total_cents, currency)}"]
    return subject, "\n".join(body)


class Mailer:
    def __init__(self) -> None:
        self._enabled = settings.EMAILS_ENABLED

    def send(self, *, to: str, subject: str, text: str) -> None:
        """
        Send one plain text email.

        Raises:
            TerminalRejection: the server refused every recipient
            TransientDependencyError: connection or protocol failure
        """
        if not self._enabled:
            logger.info(f"EMAILS_ENABLED is off, not sending {subject!r} to {to}")
            return
        if not settings.SMTP_HOST or not settings.EMAILS_FROM_EMAIL:
            raise TerminalRejection("SMTP_HOST and EMAILS_FROM_EMAIL must be configured")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((settings.EMAILS_FROM_NAME or "", settings.EMAILS_FROM_EMAIL))
        message["To"] = to
        message.set_content(text)

        smtp_class = smtplib.SMTP_SSL if settings.SMTP_SSL else smtplib.SMTP
        try:
            with smtp_class(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as smtp:
                if settings.SMTP_TLS and not settings.SMTP_SSL:
                    smtp.starttls()
                if settings.SMTP_USER:
                    smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD or "")
                smtp.send_message(message)
        except smtplib.SMTPRecipientsRefused as e:
            raise TerminalRejection(f"Recipient refused: {to}") from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransientDependencyError(f"SMTP error: {e}") from e
        logger.info(f"Sent {subject!r} to {to}")


_mailer: Mailer | None = None


def get_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        _mailer = Mailer()
    return _mailer
