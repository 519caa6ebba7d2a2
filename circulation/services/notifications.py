import logging
import smtplib
import time
from concurrent.futures import Future, ThreadPoolExecutor
from email.message import EmailMessage
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from circulation.config import settings

logger = logging.getLogger(__name__)


class Fact(str, Enum):
    DUE_REMINDER = "due_reminder"
    OVERDUE = "overdue"
    RESERVATION_AVAILABLE = "reservation_available"
    FINE_PAYMENT = "fine_payment"


SUBJECTS = {
    Fact.DUE_REMINDER: "Book Due Date Reminder",
    Fact.OVERDUE: "Overdue Book Notice",
    Fact.RESERVATION_AVAILABLE: "Reserved Book Now Available",
    Fact.FINE_PAYMENT: "Fine Payment Confirmation",
}


def render_body(fact: Fact, name: str, title: str, context: Dict[str, Any]) -> str:
    lines = [f"Dear {name},", ""]
    if fact == Fact.DUE_REMINDER:
        lines.append(f'This is a friendly reminder that "{title}" is due on {context.get("due_date")}.')
        lines.append("Please return the book on time to avoid late fees.")
    elif fact == Fact.OVERDUE:
        lines.append(f'"{title}" was due on {context.get("due_date")} and is now overdue.')
        lines.append(f"It is {context.get('overdue_days')} day(s) late; the current fine is {context.get('fine')}.")
    elif fact == Fact.RESERVATION_AVAILABLE:
        lines.append(f'Good news! "{title}", which you reserved, is now available for pickup.')
        lines.append("Please visit the library within 3 days to collect it.")
    elif fact == Fact.FINE_PAYMENT:
        lines.append(f"Your payment of {context.get('amount')} by {context.get('method')} "
                     f'for "{title}" has been processed.')
    lines.extend(["", "Best regards,", "Library Management Team"])
    return "\n".join(lines)


class NotificationSender:
    """Delivers borrower notices in the background.

    ``notify`` only queues the work and returns; delivery errors are logged
    and never reach the circulation operation that triggered them.
    """

    def __init__(self, max_workers: int = 2, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.email_enabled = settings.enable_email_notifications
        self.webhook_url = settings.notification_webhook_url
        self.timeout = settings.notification_timeout
        self.transport = transport
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def notify(self, fact: Fact, recipient: Dict[str, Any], book: Dict[str, Any],
               **context: Any) -> Optional[Future]:
        if not self.email_enabled and not self.webhook_url:
            logger.info(f"Notification skipped (no channel configured): {fact.value} -> {recipient.get('email')}")
            return None
        return self._executor.submit(self._deliver, fact, recipient, book, context)

    def _deliver(self, fact: Fact, recipient: Dict[str, Any], book: Dict[str, Any],
                 context: Dict[str, Any]) -> None:
        try:
            if self.email_enabled:
                try:
                    self._send_email(fact, recipient, book, context)
                except (smtplib.SMTPException, OSError) as e:
                    logger.error(f"E-mail {fact.value} to {recipient.get('email')} failed: {e}")
            if self.webhook_url:
                self._post_webhook(fact, recipient, book, context)
        except Exception:
            logger.exception(f"Notification {fact.value} for recipient {recipient.get('id')} crashed")

    def _send_email(self, fact: Fact, recipient: Dict[str, Any], book: Dict[str, Any],
                    context: Dict[str, Any]) -> None:
        message = EmailMessage()
        message["Subject"] = SUBJECTS[fact]
        message["From"] = f"{settings.smtp_from_name} <{settings.smtp_from_email}>"
        message["To"] = recipient["email"]
        message.set_content(render_body(fact, recipient.get("name", ""), book.get("title", ""), context))

        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=self.timeout) as smtp:
            smtp.starttls()
            if settings.smtp_username and settings.smtp_password:
                smtp.login(settings.smtp_username, settings.smtp_password)
            smtp.send_message(message)
        logger.info(f"E-mail sent: {fact.value} -> {recipient['email']}")

    def _post_webhook(self, fact: Fact, recipient: Dict[str, Any], book: Dict[str, Any],
                      context: Dict[str, Any], retries: int = 3, backoff: float = 0.5) -> bool:
        """POST the notice as JSON, with exponential backoff on transport errors."""
        payload = {
            "fact": fact.value,
            "recipient": recipient,
            "book": book,
            "context": {k: str(v) for k, v in context.items()},
        }
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            for attempt in range(retries):
                try:
                    response = client.post(self.webhook_url, json=payload)
                    if response.status_code < 400:
                        return True
                    logger.error(f"Webhook {fact.value} rejected: {response.status_code} - {response.text}")
                    return False
                except httpx.RequestError as e:
                    if attempt < retries - 1:
                        time.sleep(backoff * (2 ** attempt))
                        continue
                    logger.error(f"Webhook {fact.value} failed after {retries} attempts: {e}")
        return False

    def close(self) -> None:
        self._executor.shutdown(wait=True)
