import logging
from html import escape
from typing import Callable, Dict, List, Optional

import resend

log = logging.getLogger(__name__)


def build_invoice(order: dict) -> dict:
    """Invoice data taken from the order snapshot, never from live products."""
    items = []
    for item in order.get("items", []):
        name = item.get("product_name") or "Product"
        if item.get("variant_id"):
            name = f"{name} ({item.get('size')}/{item.get('color')})"
        items.append({
            "name": name,
            "quantity": item["quantity"],
            "price": float(item["price"]) * item["quantity"],
        })

    addr = order.get("shipping_address") or {}
    if addr:
        parts = [addr.get("full_name"), addr.get("line1"), addr.get("line2"), addr.get("city")]
        address = ", ".join(p for p in parts if p)
        if addr.get("state"):
            address += f", {addr['state']}"
        address += f" - {addr.get('postal_code')}"
    else:
        address = "N/A"

    created_at = order.get("created_at")
    return {
        "order_number": order.get("order_number"),
        "items": items,
        "subtotal": float(order.get("subtotal", 0)),
        "discount": float(order.get("discount", 0)),
        "shipping": float(order.get("shipping_charge", 0)),
        "tax": float(order.get("tax", 0)),
        "total": float(order.get("total", 0)),
        "address": address,
        "payment_method": order.get("payment_method"),
        "order_date": created_at.strftime("%d %B %Y") if created_at else None,
    }


def _rows(items: List[dict]) -> str:
    return "".join(
        f"<tr><td>{escape(str(i['name']))}</td><td>{i['quantity']}</td><td>&#8377;{i['price']:,.2f}</td></tr>"
        for i in items
    )


def _page(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
        "<body style=\"font-family: 'Segoe UI', Arial, sans-serif;\">"
        f"<h1>Helmet Store</h1><h2>{escape(title)}</h2>{body}</body></html>"
    )


class EmailNotifier:
    """Sends transactional mail through Resend.

    Every public method is best-effort: failures are logged and reported as
    ``False``, never raised, so they can run as background tasks after an order
    has been committed.
    """

    def __init__(self, api_key: Optional[str], sender: str, frontend_url: str = "http://localhost:3000",
                 transport: Optional[Callable[[Dict[str, object]], object]] = None):
        self.api_key = (api_key or "").strip()
        self.sender = sender
        self.frontend_url = frontend_url.rstrip("/")
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key) or self.transport is not None

    def _deliver(self, payload: Dict[str, object]) -> object:
        if self.transport is not None:
            return self.transport(payload)
        resend.api_key = self.api_key
        return resend.Emails.send(payload)

    def send(self, kind: str, to: str, subject: str, html: str) -> bool:
        if not to:
            log.warning("No recipient for %s email, skipping", kind)
            return False
        if not self.configured:
            log.warning("Email not configured - skipping %s email", kind)
            log.debug("Would have sent email to %s: %s", to, subject)
            return False
        payload = {"from": self.sender, "to": [to], "subject": subject, "html": html}
        try:
            self._deliver(payload)
        except Exception:
            log.exception("Failed to send %s email to %s", kind, to)
            return False
        log.info("Email sent to %s: %s", to, subject)
        return True

    def order_confirmation(self, user: dict, order: dict) -> bool:
        items = [
            {"name": i["product_name"], "quantity": i["quantity"], "price": float(i["subtotal"])}
            for i in order.get("items", [])
        ]
        body = (
            f"<p>Hi {escape(user.get('name') or '')}, your order <strong>#{order['order_number']}</strong> "
            f"has been placed successfully.</p>"
            f"<table>{_rows(items)}</table>"
            f"<p>Total: &#8377;{float(order['total']):,.2f}</p>"
            f"<p><a href=\"{self.frontend_url}/account/orders\">View your orders</a></p>"
        )
        return self.send(
            "order_confirmation",
            user.get("email"),
            f"Order Confirmed #{order['order_number']} - Helmet Store",
            _page("Order Confirmed!", body),
        )

    def order_shipped(self, user: dict, order: dict) -> bool:
        body = (
            f"<p>Hi {escape(user.get('name') or '')}, your order <strong>#{order['order_number']}</strong> "
            f"is on its way.</p>"
            f"<p>Tracking number: <strong>{escape(order.get('tracking_number') or '')}</strong></p>"
        )
        return self.send(
            "order_shipped",
            user.get("email"),
            f"Your order #{order['order_number']} has shipped - Helmet Store",
            _page("Order Shipped", body),
        )

    def order_delivered(self, user: dict, order: dict) -> bool:
        invoice = build_invoice(order)
        totals = (
            f"<p>Subtotal: &#8377;{invoice['subtotal']:,.2f}</p>"
            f"<p>Discount: &#8377;{invoice['discount']:,.2f}</p>"
            f"<p>Shipping: &#8377;{invoice['shipping']:,.2f}</p>"
            f"<p>Tax (GST): &#8377;{invoice['tax']:,.2f}</p>"
            f"<p><strong>Total: &#8377;{invoice['total']:,.2f}</strong></p>"
        )
        body = (
            f"<p>Hi {escape(user.get('name') or '')}, your order <strong>#{invoice['order_number']}</strong> "
            f"was delivered. Your invoice is below.</p>"
            f"<p>Order date: {invoice['order_date'] or ''}<br>Payment: {invoice['payment_method']}<br>"
            f"Ship to: {escape(invoice['address'])}</p>"
            f"<table>{_rows(invoice['items'])}</table>{totals}"
        )
        return self.send(
            "order_delivered",
            user.get("email"),
            f"Delivered: order #{invoice['order_number']} - Helmet Store",
            _page("Order Delivered", body),
        )
