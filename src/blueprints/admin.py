from __future__ import annotations

import math
from typing import Any, Optional

from flask import Blueprint, current_app, jsonify, request

from src.database import SessionLocal, get_db
from src.blueprints.serializers import (
    current_user,
    forbidden,
    is_admin,
    json_admin_response,
    not_authenticated,
    serialize_discount,
    serialize_order,
    serialize_referral,
    serialize_referral_transaction,
)
from src.models import OrderStatus, PaymentStatus
from src.observability import get_metrics_snapshot
from src.services.catalog_service import CatalogService, serialize_book
from src.services.checkout_service import CheckoutService
from src.services.fulfillment_service import FulfillmentService
from src.services.inventory_service import InventoryService
from src.services.order_service import OrderLedger
from src.services.promotion_service import PromotionLedger
from src.services.settings_service import SettingsService, serialize_settings
from src.services.sweep_service import PendingPaymentSweeper

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.before_request
def _require_admin() -> Optional[Any]:
    if current_user() is None:
        return not_authenticated()
    if not is_admin():
        return forbidden()
    return None


def _body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


# --- Orders -----------------------------------------------------------------


@admin_bp.route("/orders", methods=["GET"])
def list_orders():
    args = request.args
    page = max(args.get("page", 1, type=int), 1)
    limit = min(max(args.get("limit", 10, type=int), 1), 100)
    try:
        status = OrderStatus(args["status"].strip().upper().replace(" ", "_")) if args.get("status") else None
        payment_status = PaymentStatus(args["paymentStatus"].strip().upper()) if args.get("paymentStatus") else None
    except ValueError:
        return jsonify({"error": "Unknown status filter"}), 400

    orders, total = OrderLedger(get_db()).search(
        page=page,
        limit=limit,
        search=args.get("search", "").strip(),
        status=status,
        payment_status=payment_status,
        user_id=args.get("userId", type=int),
    )
    return jsonify(
        {
            "orders": [serialize_order(order) for order in orders],
            "totalItems": total,
            "totalPages": math.ceil(total / limit),
        }
    )


@admin_bp.route("/orders/<order_id>/status", methods=["PUT"])
def update_order_status(order_id: str):
    success, message, order = FulfillmentService(get_db()).update_status(order_id, _body().get("status"))
    return json_admin_response(success, message, "order", serialize_order(order) if order else None)


@admin_bp.route("/orders/<order_id>/refund", methods=["POST"])
def refund_order(order_id: str):
    service = CheckoutService(get_db(), gateway_factory=current_app.config.get("PAYMENT_GATEWAY_FACTORY"))
    success, message, data = service.refund_order(order_id)
    return json_admin_response(success, message, "refund", data)


@admin_bp.route("/orders/<order_id>/transit", methods=["POST", "PUT"])
def update_order_transit(order_id: str):
    success, message, order = FulfillmentService(get_db()).update_shipping(order_id, _body())
    return json_admin_response(success, message, "order", serialize_order(order) if order else None)


@admin_bp.route("/payments/sweep", methods=["POST"])
def run_payment_sweep():
    sweeper = PendingPaymentSweeper(
        SessionLocal,
        gateway_factory=current_app.config.get("PAYMENT_GATEWAY_FACTORY"),
    )
    report = sweeper.sweep_once()
    return jsonify(report.to_dict())


# --- Catalog ----------------------------------------------------------------


@admin_bp.route("/books", methods=["GET"])
def list_books():
    books = CatalogService(get_db()).list_books()
    return jsonify({"books": [serialize_book(book) for book in books]})


@admin_bp.route("/books", methods=["POST"])
def add_book():
    body = _body()
    success, message, book = CatalogService(get_db()).create_book(
        sku=body.get("sku"),
        title=body.get("title"),
        kind=body.get("type"),
        price=body.get("price"),
        stock=body.get("stock"),
        description=body.get("description"),
    )
    return json_admin_response(success, message, "book", serialize_book(book) if book else None, status=201)


@admin_bp.route("/books/<int:book_id>", methods=["PUT"])
def update_book(book_id: int):
    success, message, book = CatalogService(get_db()).update_book(book_id, _body())
    return json_admin_response(success, message, "book", serialize_book(book) if book else None)


@admin_bp.route("/books/<int:book_id>/stock", methods=["PUT"])
def adjust_stock(book_id: int):
    body = _body()
    success, message, book = InventoryService(get_db()).manual_adjust(
        book_id, body.get("stock"), body.get("reason") or ""
    )
    return json_admin_response(success, message, "book", serialize_book(book) if book else None)


# --- Discounts --------------------------------------------------------------


@admin_bp.route("/discounts", methods=["GET"])
def list_discounts():
    discounts = PromotionLedger(get_db()).list_discounts(request.args.get("search", ""))
    return jsonify({"discounts": [serialize_discount(d) for d in discounts]})


@admin_bp.route("/discounts", methods=["POST"])
def add_discount():
    success, message, discount = PromotionLedger(get_db()).create_discount(_body())
    return json_admin_response(
        success, message, "discount", serialize_discount(discount) if discount else None, status=201
    )


@admin_bp.route("/discounts/<int:discount_id>", methods=["PUT"])
def update_discount(discount_id: int):
    success, message, discount = PromotionLedger(get_db()).update_discount(discount_id, _body())
    return json_admin_response(success, message, "discount", serialize_discount(discount) if discount else None)


# --- Referrals --------------------------------------------------------------


@admin_bp.route("/referrals", methods=["GET"])
def list_referrals():
    referrals = PromotionLedger(get_db()).list_referrals(request.args.get("search", ""))
    return jsonify(
        {
            "referrals": [serialize_referral(r) for r in referrals],
            "stats": {
                "totalEarned": sum(r.total_earned or 0 for r in referrals),
                "totalPending": sum(r.pending_payout or 0 for r in referrals),
            },
        }
    )


@admin_bp.route("/referrals", methods=["POST"])
def add_referral():
    success, message, referral = PromotionLedger(get_db()).create_referral(_body())
    return json_admin_response(
        success, message, "referral", serialize_referral(referral) if referral else None, status=201
    )


@admin_bp.route("/referrals/<int:referral_id>", methods=["PUT"])
def update_referral(referral_id: int):
    success, message, referral = PromotionLedger(get_db()).update_referral(referral_id, _body())
    return json_admin_response(success, message, "referral", serialize_referral(referral) if referral else None)


@admin_bp.route("/referrals/<int:referral_id>/transactions", methods=["GET"])
def referral_transactions(referral_id: int):
    transactions = PromotionLedger(get_db()).referral_transactions(referral_id)
    if transactions is None:
        return jsonify({"error": "Referral not found"}), 404
    return jsonify({"transactions": [serialize_referral_transaction(t) for t in transactions]})


@admin_bp.route("/referrals/transactions/<int:transaction_id>/pay", methods=["PUT"])
def mark_transaction_paid(transaction_id: int):
    ledger = PromotionLedger(get_db())
    success, message, transaction = ledger.mark_paid(transaction_id)
    body = None
    if success and transaction is not None:
        body = {
            "transaction": serialize_referral_transaction(transaction),
            "pendingPayout": transaction.referral.pending_payout,
        }
    return json_admin_response(success, message, "payout", body)


# --- Settings ---------------------------------------------------------------


@admin_bp.route("/settings", methods=["GET"])
def get_settings():
    service = SettingsService(get_db())
    return jsonify(serialize_settings(service.get_record(), service.resolve()))


@admin_bp.route("/settings/<section>", methods=["PUT"])
def update_settings(section: str):
    service = SettingsService(get_db())
    success, message, record = service.update_section(section, _body())
    settings = serialize_settings(record, service.resolve()) if record is not None else None
    return json_admin_response(success, message, "settings", settings)


@admin_bp.route("/metrics", methods=["GET"])
def metrics():
    return jsonify(get_metrics_snapshot())
