import logging
from typing import Callable, Dict, Optional

import razorpay
import requests
from razorpay.errors import BadRequestError, GatewayError, ServerError, SignatureVerificationError

from errors import PaymentGatewayError, PaymentGatewayUnavailable
from pricing import to_minor_units

log = logging.getLogger(__name__)


class RazorpayGateway:
    """Wraps the Razorpay SDK client (orders, payments, signature checks).

    SDK and transport errors are mapped onto the API error types: timeouts,
    connection failures and gateway 5xx become ``PaymentGatewayUnavailable``
    (retryable), anything else ``PaymentGatewayError``.
    """

    currency = "INR"

    def __init__(self, key_id: Optional[str], key_secret: Optional[str],
                 base_url: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.timeout = timeout
        options = {"base_url": base_url.rstrip("/")} if base_url else {}
        self.client = razorpay.Client(session=session, auth=(key_id or "", key_secret or ""), **options)

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def _call(self, action: str, fn: Callable, *args, **kwargs) -> dict:
        if not self.configured:
            log.warning("Razorpay credentials not configured")
            raise PaymentGatewayError("Payment gateway is not configured")
        try:
            return fn(*args, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as exc:
            log.error("Razorpay %s unreachable: %s", action, exc)
            raise PaymentGatewayUnavailable()
        except ServerError as exc:
            log.error("Razorpay %s server error: %s", action, exc)
            raise PaymentGatewayUnavailable()
        except BadRequestError as exc:
            log.error("Razorpay %s rejected: %s", action, exc)
            raise PaymentGatewayError("Invalid payment details")
        except GatewayError as exc:
            log.error("Razorpay %s gateway error: %s", action, exc)
            raise PaymentGatewayError()
        except (requests.RequestException, ValueError) as exc:
            # ValueError: body was not JSON
            log.error("Razorpay %s failed: %s", action, exc)
            raise PaymentGatewayError()

    def create_order(self, amount: float, receipt: str, notes: Optional[Dict[str, str]] = None) -> dict:
        if amount <= 0:
            raise PaymentGatewayError("Invalid amount")
        payload = {
            "amount": to_minor_units(amount),
            "currency": self.currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        data = self._call("order create", self.client.order.create, data=payload)
        log.info("Razorpay order created: %s (amount: %s)", data.get("id"), amount)
        return {
            "id": data["id"],
            "amount": data.get("amount", payload["amount"]),
            "currency": data.get("currency", self.currency),
            "receipt": data.get("receipt") or receipt,
        }

    def fetch_payment(self, payment_id: str) -> dict:
        return self._call("payment fetch", self.client.payment.fetch, payment_id)

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not self.key_secret:
            log.error("RAZORPAY_KEY_SECRET not configured, rejecting signature")
            return False
        try:
            self.client.utility.verify_payment_signature({
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": signature or "",
            })
            valid = True
        except SignatureVerificationError:
            valid = False
        log.info("Razorpay signature verification: %s", "valid" if valid else "INVALID")
        return valid
