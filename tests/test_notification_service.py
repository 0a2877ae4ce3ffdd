import smtplib
import threading

import pytest

from src.models import Order, OrderItem, OrderStatus
from src.services import notification_service
from src.services.email_templates import order_placed_email, payment_success_email
from src.services.notification_service import (
    EmailSender,
    NotificationService,
    publish_order_event,
    wait_for_pending_emails,
)


class FakeSMTP:
    sent = []

    def __init__(self, host, port):
        self.host = host
        self.port = port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def login(self, username, password):
        pass

    def send_message(self, message):
        FakeSMTP.sent.append(message)


class SlowSMTP(FakeSMTP):
    release = threading.Event()

    def send_message(self, message):
        SlowSMTP.release.wait(5)
        FakeSMTP.sent.append(message)


class FailingSMTP(FakeSMTP):
    def send_message(self, message):
        raise smtplib.SMTPServerDisconnected("gone")


@pytest.fixture
def order(db_session, make_user, make_book):
    user = make_user(name="<b>Asha</b>")
    book = make_book(title="Gita & Commentary")
    order = Order(
        order_number="BK-MAIL-1",
        userID=user.userID,
        status=OrderStatus.IN_PROGRESS,
        subtotal=300,
        total=365,
        shipping_address="x",
    )
    order.items.append(OrderItem(bookID=book.bookID, name=book.title, kind=book.kind, quantity=1, unit_price=300))
    db_session.add(order)
    db_session.commit()
    return order


@pytest.fixture
def captured_mail():
    FakeSMTP.sent = []
    notification_service.set_email_sender(EmailSender(smtp_factory=FakeSMTP))
    yield FakeSMTP.sent
    wait_for_pending_emails()
    notification_service.set_email_sender(EmailSender())


def test_templates_escape_user_values(order):
    subject, body = order_placed_email(order, "<b>Asha</b>", "Chintamukti Books")
    assert "BK-MAIL-1" in subject
    assert "&lt;b&gt;Asha&lt;/b&gt;" in body
    assert "<b>Asha</b>" not in body

    _, body = payment_success_email(order, "Asha", "Chintamukti Books")
    assert "Gita &amp; Commentary" in body


def test_publish_order_event_feeds_and_mails(order, captured_mail):
    publish_order_event(order, "payment_success", "Chintamukti Books")
    wait_for_pending_emails()

    feed = NotificationService().get_notifications(order.userID)
    assert feed[0]["type"] == "payment_success"
    assert feed[0]["orderId"] == "BK-MAIL-1"
    assert len(captured_mail) == 1
    assert captured_mail[0]["To"] == order.user.email


def test_mail_failure_does_not_raise(order):
    notification_service.set_email_sender(EmailSender(smtp_factory=FailingSMTP))
    try:
        publish_order_event(order, "refund_processed")
        wait_for_pending_emails()
    finally:
        notification_service.set_email_sender(EmailSender())

    assert NotificationService().get_unread_count(order.userID) == 1


def test_mark_all_as_read(order):
    service = NotificationService()
    publish_order_event(order, "order_dispatched")
    publish_order_event(order, "order_delivered")

    assert service.get_unread_count(order.userID) == 2
    assert service.mark_all_as_read(order.userID) == 2
    assert service.get_notifications(order.userID, unread_only=True) == []


def test_unknown_event_is_ignored(order):
    publish_order_event(order, "order_teleported")
    assert NotificationService().get_unread_count(order.userID) == 0


def test_slow_mail_server_does_not_hold_up_the_caller(order, captured_mail):
    SlowSMTP.release.clear()
    notification_service.set_email_sender(EmailSender(smtp_factory=SlowSMTP))

    publish_order_event(order, "payment_success")

    assert captured_mail == []
    assert NotificationService().get_unread_count(order.userID) == 1

    SlowSMTP.release.set()
    wait_for_pending_emails()
    assert len(captured_mail) == 1
