from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from src.blueprints.serializers import enum_value
from src.database import get_db
from src.services.checkout_service import CheckoutService
from src.services.fulfillment_service import FulfillmentService

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")

logger = logging.getLogger(__name__)


@webhooks_bp.route("/payment", methods=["POST"])
def payment_callback():
    """Provider server-to-server callback. 400 only for a bad signature."""
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    service = CheckoutService(
        get_db(),
        gateway_factory=current_app.config.get("PAYMENT_GATEWAY_FACTORY"),
    )
    result = service.handle_payment_callback(body.get("response"), request.headers.get("X-VERIFY"))
    if result is not None:
        logger.info(
            "Payment callback handled",
            extra={"order_number": result.order_number, "applied": result.applied},
        )
    # Acknowledge so the provider stops retrying
    return jsonify({"success": True}), 200


@webhooks_bp.route("/delivery", methods=["POST"])
def delivery_callback():
    order = FulfillmentService(get_db()).handle_delivery_update(
        request.get_json(silent=True),
        request.headers.get("X-Delivery-Token"),
    )
    return jsonify(
        {
            "success": True,
            "message": "Transit history updated",
            "orderId": order.order_number,
            "status": enum_value(order.status),
        }
    )
