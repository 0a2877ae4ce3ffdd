from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from src.database import get_db
from src.blueprints.serializers import current_user, not_authenticated, serialize_order
from src.services.checkout_service import CheckoutService
from src.services.notification_service import NotificationService
from src.services.order_service import OrderLedger
from src.services.promotion_service import PromotionLedger

orders_bp = Blueprint("orders", __name__)


def _get_checkout_service() -> CheckoutService:
    return CheckoutService(
        get_db(),
        gateway_factory=current_app.config.get("PAYMENT_GATEWAY_FACTORY"),
    )


@orders_bp.route("/api/orders/checkout", methods=["POST"])
def checkout():
    user = current_user()
    if user is None:
        return not_authenticated()

    result = _get_checkout_service().checkout(user, request.get_json(silent=True) or {})
    return jsonify(result.to_dict()), 201


@orders_bp.route("/api/orders/verify-payment/<order_id>", methods=["GET"])
def verify_payment(order_id: str):
    user = current_user()
    if user is None:
        return not_authenticated()

    return jsonify(_get_checkout_service().verify_payment(user, order_id))


@orders_bp.route("/api/orders/retry-payment/<order_id>", methods=["GET"])
def retry_payment(order_id: str):
    user = current_user()
    if user is None:
        return not_authenticated()

    redirect_url = _get_checkout_service().retry_payment(user, order_id)
    return jsonify({"success": True, "paymentPayload": {"redirectUrl": redirect_url}})


@orders_bp.route("/api/orders/mine", methods=["GET"])
def my_orders():
    user = current_user()
    if user is None:
        return not_authenticated()

    orders = OrderLedger(get_db()).find_by_owner(user.userID)
    return jsonify({"orders": [serialize_order(order) for order in orders]})


@orders_bp.route("/api/orders/notifications", methods=["GET"])
def my_notifications():
    user = current_user()
    if user is None:
        return not_authenticated()

    service = NotificationService()
    unread_only = request.args.get("unread") in {"1", "true", "yes"}
    return jsonify(
        {
            "notifications": service.get_notifications(user.userID, unread_only=unread_only),
            "unreadCount": service.get_unread_count(user.userID),
        }
    )


@orders_bp.route("/api/orders/notifications/mark-all-read", methods=["POST"])
def mark_notifications_read():
    user = current_user()
    if user is None:
        return not_authenticated()

    count = NotificationService().mark_all_as_read(user.userID)
    return jsonify({"success": True, "markedCount": count, "unreadCount": 0})


@orders_bp.route("/api/discounts/validate", methods=["POST"])
def validate_promo():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    preview = PromotionLedger(get_db()).preview(body.get("code"), body.get("subtotal"))
    return jsonify(preview.to_dict())
