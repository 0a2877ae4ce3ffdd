from __future__ import annotations

from html import escape
from typing import Tuple

from src.config import Config
from src.models import Order

BASE_STYLE = (
    "font-family: Arial, sans-serif; color: #333; line-height: 1.6; max-width: 600px; "
    "margin: 0 auto; padding: 20px; border: 1px solid #ddd; border-radius: 8px;"
)

Email = Tuple[str, str]


def _button(href: str, label: str, colour: str) -> str:
    return (
        f'<a href="{escape(href)}" style="display: inline-block; padding: 10px 20px; '
        f'background: {colour}; color: #fff; text-decoration: none; border-radius: 5px;">{escape(label)}</a>'
    )


def order_placed_email(order: Order, user_name: str, store_name: str) -> Email:
    subject = f"{store_name}: order #{order.order_number} created"
    body = f"""
  <div style="{BASE_STYLE}">
    <h2>Order Initialized: #{escape(order.order_number)}</h2>
    <p>Hi {escape(user_name)},</p>
    <p>Your order has been created. Please complete your payment to confirm the order.</p>
    <p><strong>Total Amount:</strong> ₹{order.total}</p>
    {_button(f"{Config.FRONTEND_URL}/user/orders", "Complete Payment", "#FF9800")}
  </div>
"""
    return subject, body


def payment_success_email(order: Order, user_name: str, store_name: str) -> Email:
    items_html = "".join(
        f"<li>{escape(item.name)} (x{item.quantity}) - ₹{item.line_total}</li>" for item in order.items
    )
    subject = f"{store_name}: payment received for order #{order.order_number}"
    body = f"""
    <div style="{BASE_STYLE}">
      <h2 style="color: #4CAF50;">Payment Successful!</h2>
      <p>Hi {escape(user_name)}, we have received your payment for Order <strong>#{escape(order.order_number)}</strong>.</p>
      <hr style="border: none; border-top: 1px solid #eee; margin: 15px 0;"/>
      <h3>Order Summary</h3>
      <ul>{items_html}</ul>
      <p><strong>Subtotal:</strong> ₹{order.subtotal}</p>
      <p><strong>Shipping:</strong> ₹{order.shipping_fee}</p>
      <p><strong>Discount:</strong> -₹{order.discount_amount}</p>
      <p><strong>Tax:</strong> ₹{order.tax_amount}</p>
      <h3 style="color: #d32f2f;">Total Paid: ₹{order.total}</h3>
    </div>
"""
    return subject, body


def order_dispatched_email(order: Order, store_name: str) -> Email:
    partner = escape(order.shipping_partner or "")
    subject = f"{store_name}: order #{order.order_number} has been dispatched"
    body = f"""
  <div style="{BASE_STYLE}">
    <h2 style="color: #2196F3;">Your Order is on the way!</h2>
    <p>Great news! Order <strong>#{escape(order.order_number)}</strong> has been dispatched.</p>
    <p><strong>Logistics Partner:</strong> {partner}</p>
    <p><strong>Tracking Number:</strong> {escape(order.tracking_id or "")}</p>
    <p>You can track your package directly on the {partner} website or via your dashboard.</p>
  </div>
"""
    return subject, body


def delivery_success_email(order: Order, store_name: str) -> Email:
    subject = f"{store_name}: order #{order.order_number} delivered"
    body = f"""
  <div style="{BASE_STYLE}">
    <h2 style="color: #4CAF50;">Package Delivered!</h2>
    <p>Your Order <strong>#{escape(order.order_number)}</strong> has been successfully delivered.</p>
    <p>We hope you love your purchase. If you have any issues, please contact our support team.</p>
  </div>
"""
    return subject, body


def refund_processed_email(order: Order, store_name: str) -> Email:
    subject = f"{store_name}: refund initiated for order #{order.order_number}"
    body = f"""
  <div style="{BASE_STYLE}">
    <h2 style="color: #FF9800;">Refund Initiated</h2>
    <p>Order <strong>#{escape(order.order_number)}</strong> has been cancelled and a refund of
    <strong>₹{order.total}</strong> has been initiated to your original payment method.</p>
    <p>Refunds usually reach your account within 5-7 business days.</p>
  </div>
"""
    return subject, body
