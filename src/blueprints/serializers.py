from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import g, jsonify

from src.models import (
    Discount,
    Order,
    OrderItem,
    Referral,
    ReferralTransaction,
    TransitEntry,
)


def serialize_dt(value: Optional[datetime]) -> Optional[str]:
    if not value:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def current_user():
    return getattr(g, "current_user", None)


def is_admin() -> bool:
    user = current_user()
    return bool(user and user.is_admin)


def not_authenticated():
    return jsonify({"error": "Not authenticated"}), 401


def forbidden():
    return jsonify({"error": "Forbidden"}), 403


def json_admin_response(success: bool, message: str, key: Optional[str] = None, obj: Any = None, status: int = 200):
    code = status if success else (404 if "not found" in message.lower() else 400)
    body: Dict[str, Any] = {"success": success, "message": message}
    if key and obj is not None:
        body[key] = obj
    return jsonify(body), code


def serialize_order_item(item: OrderItem) -> Dict[str, Any]:
    return {
        "bookId": item.bookID,
        "name": item.name,
        "kind": enum_value(item.kind),
        "quantity": item.quantity,
        "unitPrice": item.unit_price,
    }


def serialize_transit(entry: TransitEntry) -> Dict[str, Any]:
    return {"stage": entry.stage, "time": serialize_dt(entry.occurred_at), "completed": entry.completed}


def serialize_order(order: Order) -> Dict[str, Any]:
    return {
        "orderId": order.order_number,
        "status": enum_value(order.status),
        "items": [serialize_order_item(item) for item in order.items],
        "priceBreakup": {
            "subtotal": order.subtotal,
            "shipping": order.shipping_fee,
            "discountCode": order.discount_code,
            "discountAmount": order.discount_amount,
            "referralApplied": order.referral_code,
            "taxAmount": order.tax_amount,
            "total": order.total,
        },
        "payment": {
            "txnId": order.payment_txn_id,
            "method": order.payment_method,
            "status": enum_value(order.payment_status),
            "initiatedAt": serialize_dt(order.payment_initiated_at),
            "updatedAt": serialize_dt(order.payment_updated_at),
        },
        "shipping": {
            "address": order.shipping_address,
            "partner": order.shipping_partner,
            "trackingId": order.tracking_id,
        },
        "transitHistory": [serialize_transit(entry) for entry in order.transit_history],
        "createdAt": serialize_dt(order.created_at),
    }


def serialize_discount(discount: Discount) -> Dict[str, Any]:
    return {
        "id": discount.discountID,
        "code": discount.code,
        "type": enum_value(discount.kind),
        "value": discount.value,
        "maxDiscount": discount.max_discount,
        "validTill": serialize_dt(discount.valid_till),
        "maxUsage": discount.max_usage,
        "currentUsage": discount.current_usage,
        "status": enum_value(discount.status),
    }


def serialize_referral(referral: Referral) -> Dict[str, Any]:
    user = referral.user
    return {
        "id": referral.referralID,
        "code": referral.code,
        "userId": referral.userID,
        "userName": user.name if user else "Unknown User",
        "rate": referral.reward_rate,
        "uses": referral.uses,
        "earned": referral.total_earned,
        "pending": referral.pending_payout,
        "status": enum_value(referral.status),
        "isDiscountLinked": referral.is_discount_linked,
    }


def serialize_referral_transaction(txn: ReferralTransaction) -> Dict[str, Any]:
    order = txn.order
    return {
        "id": txn.transactionID,
        "orderId": order.order_number if order else "Deleted Order",
        "orderStatus": enum_value(order.status) if order else "Unknown",
        "payoutStatus": enum_value(txn.payout_status),
        "amount": txn.earned_amount,
        "date": serialize_dt(txn.created_at),
        "paidAt": serialize_dt(txn.paid_at),
    }
