"""
Order notifications.

Every order milestone lands in an in-memory per-user feed and, when SMTP is
configured, in the buyer's inbox. Both are best-effort: a failure here is
logged and never reaches checkout or settlement.
"""
from __future__ import annotations

import logging
import smtplib
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from threading import Lock, Thread
from typing import Any, Callable, Dict, List, Optional

from src.config import Config
from src.models import Order
from src.observability import increment_counter, record_event
from src.services import email_templates

logger = logging.getLogger(__name__)


@dataclass
class Notification:
    id: str
    user_id: int
    notification_type: str
    title: str
    message: str
    order_number: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "orderId": self.order_number,
            "createdAt": self.created_at.isoformat(),
            "read": self.read,
        }


class NotificationService:
    """Process-wide feed of order notifications, newest first, capped per user."""

    _instance: Optional["NotificationService"] = None
    _lock: Lock = Lock()

    def __new__(cls) -> "NotificationService":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._notifications: Dict[int, List[Notification]] = defaultdict(list)
        self._counter = 0
        self._max_per_user = 50
        self._initialized = True

    def add_notification(
        self,
        user_id: int,
        notification_type: str,
        title: str,
        message: str,
        order_number: Optional[str] = None,
    ) -> Notification:
        with self._lock:
            self._counter += 1
            notification = Notification(
                id=f"notif_{self._counter}_{int(datetime.now().timestamp())}",
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                order_number=order_number,
            )
            feed = self._notifications[user_id]
            feed.insert(0, notification)
            del feed[self._max_per_user:]

        increment_counter("notifications_created_total", labels={"type": notification_type})
        return notification

    def get_notifications(self, user_id: int, unread_only: bool = False, limit: int = 20) -> List[Dict[str, Any]]:
        feed = self._notifications.get(user_id, [])
        if unread_only:
            feed = [n for n in feed if not n.read]
        return [n.to_dict() for n in feed[:limit]]

    def get_unread_count(self, user_id: int) -> int:
        return sum(1 for n in self._notifications.get(user_id, []) if not n.read)

    def mark_all_as_read(self, user_id: int) -> int:
        count = 0
        for notification in self._notifications.get(user_id, []):
            if not notification.read:
                notification.read = True
                count += 1
        return count

    def reset(self) -> None:
        """Testing helper."""
        with self._lock:
            self._notifications.clear()
            self._counter = 0


class EmailSender:
    """Thin SMTP wrapper. ``smtp_factory`` lets tests capture outgoing mail."""

    def __init__(self, smtp_factory: Optional[Callable[..., Any]] = None) -> None:
        self.smtp_factory = smtp_factory

    @property
    def is_configured(self) -> bool:
        return bool(Config.SMTP_HOST) or self.smtp_factory is not None

    def _connect(self):
        if self.smtp_factory is not None:
            return self.smtp_factory(Config.SMTP_HOST, Config.SMTP_PORT)
        if Config.SMTP_USE_SSL:
            return smtplib.SMTP_SSL(Config.SMTP_HOST, Config.SMTP_PORT, timeout=Config.SMTP_TIMEOUT_SECONDS)
        return smtplib.SMTP(Config.SMTP_HOST, Config.SMTP_PORT, timeout=Config.SMTP_TIMEOUT_SECONDS)

    def send(self, to: Optional[str], subject: str, html_body: str, store_name: str) -> bool:
        if not to:
            return False
        if not self.is_configured:
            logger.debug("SMTP not configured; skipping email '%s'", subject)
            return False

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f'"{store_name} Support" <{Config.MAIL_FROM}>'
        message["To"] = to
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(html_body, subtype="html")

        try:
            with self._connect() as smtp:
                if Config.SMTP_USERNAME:
                    smtp.login(Config.SMTP_USERNAME, Config.SMTP_PASSWORD)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            increment_counter("emails_failed_total")
            logger.warning("Email sending failed to %s: %s", to, exc)
            return False

        increment_counter("emails_sent_total")
        return True


ORDER_EVENTS: Dict[str, Dict[str, Any]] = {
    "order_placed": {
        "title": "Order {number} created",
        "message": "Complete your payment of ₹{total} to confirm order {number}.",
        "template": lambda order, name, store: email_templates.order_placed_email(order, name, store),
    },
    "payment_success": {
        "title": "Payment received",
        "message": "We received your payment for order {number}.",
        "template": lambda order, name, store: email_templates.payment_success_email(order, name, store),
    },
    "order_dispatched": {
        "title": "Order {number} dispatched",
        "message": "Your order {number} is on the way.",
        "template": lambda order, name, store: email_templates.order_dispatched_email(order, store),
    },
    "order_delivered": {
        "title": "Order {number} delivered",
        "message": "Your order {number} has been delivered.",
        "template": lambda order, name, store: email_templates.delivery_success_email(order, store),
    },
    "refund_processed": {
        "title": "Refund initiated",
        "message": "A refund of ₹{total} for order {number} has been initiated.",
        "template": lambda order, name, store: email_templates.refund_processed_email(order, store),
    },
}

_email_sender = EmailSender()
_email_threads: List[Thread] = []
_email_threads_lock = Lock()


def set_email_sender(sender: EmailSender) -> None:
    global _email_sender
    _email_sender = sender


def _deliver(sender: EmailSender, to: str, subject: str, html_body: str, store_name: str) -> None:
    try:
        sender.send(to, subject, html_body, store_name)
    except Exception:
        logger.exception("Background email delivery failed", extra={"subject": subject})


def send_email_in_background(
    sender: EmailSender, to: str, subject: str, html_body: str, store_name: str
) -> Thread:
    """Hand one message to a daemon thread so SMTP latency never reaches the caller."""
    thread = Thread(
        target=_deliver,
        args=(sender, to, subject, html_body, store_name),
        name="order-email",
        daemon=True,
    )
    with _email_threads_lock:
        _email_threads[:] = [t for t in _email_threads if t.is_alive()]
        _email_threads.append(thread)
    thread.start()
    return thread


def wait_for_pending_emails(timeout: float = 5.0) -> None:
    """Block until queued emails are sent. Used at shutdown and in tests."""
    with _email_threads_lock:
        pending = list(_email_threads)
    for thread in pending:
        thread.join(timeout)


def publish_order_event(order: Order, event: str, store_name: Optional[str] = None) -> None:
    """Notify the buyer about an order milestone. Never raises."""
    definition = ORDER_EVENTS.get(event)
    if definition is None:
        logger.warning("Unknown order event %s", event)
        return

    store = store_name or Config.STORE_NAME
    try:
        record_event(
            event,
            {
                "order_number": order.order_number,
                "user_id": order.userID,
                "status": getattr(order.status, "value", order.status),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
        fmt = {"number": order.order_number, "total": order.total}
        NotificationService().add_notification(
            user_id=order.userID,
            notification_type=event,
            title=definition["title"].format(**fmt),
            message=definition["message"].format(**fmt),
            order_number=order.order_number,
        )

        user = order.user
        if user is not None and user.email and _email_sender.is_configured:
            subject, html_body = definition["template"](order, user.name, store)
            send_email_in_background(_email_sender, user.email, subject, html_body, store)
    except Exception:
        logger.exception(
            "Failed to publish order notification",
            extra={"order_number": getattr(order, "order_number", None), "event": event},
        )
