"""
Payment initiation and reconciliation against the Pesapal v3 API

PaymentInitiator asks the gateway for a payment session for an order's frozen
total and records a pending Payment. PaymentReconciler applies the gateway's
signed status notifications to the Payment and, on completion, to the Order.
"""
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

import httpx

from auth import Principal
from config import Settings
from database import Store
from errors import InvalidSignature, NotFound, PaymentError
from orders import with_products
from schemas import Payment

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Pesapal-Signature"


@dataclass
class PaymentSession:
    order_tracking_id: str
    redirect_url: str
    merchant_reference: str


class PesapalGateway:
    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.base_url = settings.pesapal_api_url.rstrip("/")
        self.client = client or httpx.Client(timeout=settings.pesapal_timeout)

    def _post(self, path: str, payload: dict, token: Optional[str] = None) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = self.client.post(f"{self.base_url}{path}", json=payload, headers=headers)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Pesapal request to {path} failed: {e}")
            raise PaymentError()

    def request_token(self) -> str:
        data = self._post("/api/Auth/RequestToken", {
            "consumer_key": self.settings.pesapal_consumer_key,
            "consumer_secret": self.settings.pesapal_consumer_secret,
        })
        token = data.get("token")
        if not token:
            logger.error(f"Pesapal token request returned no token: {data.get('error') or data.get('status')}")
            raise PaymentError()
        return token

    def submit_order(self, token: str, order: dict, user: dict, phone_number: Optional[str]) -> PaymentSession:
        reference = f"ORDER-{order['_id']}-{int(time.time() * 1000)}"
        data = self._post("/api/Transactions/SubmitOrderRequest", {
            "id": reference,
            "currency": self.settings.pesapal_currency,
            "amount": order["total"],
            "description": f"Payment for order #{order['_id']}",
            "callback_url": self.settings.callback_url,
            "notification_id": f"NOTIFY-{order['_id']}",
            "billing_address": {
                "email_address": user.get("email"),
                "phone_number": phone_number,
                "country_code": self.settings.pesapal_country_code,
                "first_name": user.get("name"),
                "last_name": "",
            },
        }, token=token)
        tracking_id = data.get("order_tracking_id")
        redirect_url = data.get("redirect_url")
        if not tracking_id or not redirect_url:
            logger.error(f"Pesapal order submission incomplete for order {order['_id']}: {data}")
            raise PaymentError()
        return PaymentSession(
            order_tracking_id=tracking_id,
            redirect_url=redirect_url,
            merchant_reference=data.get("merchant_reference") or reference,
        )


class PaymentInitiator:
    def __init__(self, store: Store, gateway: PesapalGateway):
        self.store = store
        self.gateway = gateway

    def create_intent(self, principal: Principal, order_id: str, phone_number: Optional[str] = None) -> dict:
        order = self.store.get_document_by_id("order", order_id)
        if not order or not principal.owns(order):
            raise NotFound("Order not found")

        token = self.gateway.request_token()
        session = self.gateway.submit_order(token, order, principal.user, phone_number)

        payment = Payment(
            order_id=order["_id"],
            user_id=principal.id,
            amount=order["total"],
            status="pending",
            payment_intent_id=session.order_tracking_id,
            merchant_reference=session.merchant_reference,
        )
        payment_id = self.store.create_document("payment", payment)
        logger.info(f"Payment {payment_id} pending for order {order['_id']} (tracking id {session.order_tracking_id})")
        return {"paymentUrl": session.redirect_url, "paymentId": payment_id}


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class PaymentReconciler:
    def __init__(self, store: Store, webhook_secret: Optional[str]):
        self.store = store
        self.webhook_secret = webhook_secret

    def verify(self, body: bytes, signature: Optional[str]):
        if not self.webhook_secret:
            logger.error("PESAPAL_WEBHOOK_SECRET not set; rejecting payment callback")
            raise InvalidSignature()
        expected = sign_payload(body, self.webhook_secret).encode()
        given = (signature or "").strip().lower().encode("utf-8", "surrogateescape")
        if not given or not hmac.compare_digest(expected, given):
            logger.warning("Payment callback rejected: bad signature")
            raise InvalidSignature()

    def reconcile(self, tracking_id: str, status: str) -> dict:
        payment = self.store.find_one("payment", {"payment_intent_id": tracking_id})
        if not payment:
            raise NotFound("Payment not found")

        new_status = status.lower()
        changed = self.store.update_document("payment", payment["_id"], {"status": new_status},
                                             where={"status": {"$ne": new_status}})
        # applied on every completed delivery so a lost order write is repaired by redelivery
        if new_status == "completed" and self.store.update_document(
                "order", payment["order_id"], {"status": "paid"}, where={"status": {"$ne": "paid"}}):
            logger.info(f"Order {payment['order_id']} paid (payment {payment['_id']})")
        logger.info(f"Payment {payment['_id']} status {payment['status']} -> {new_status}"
                    + ("" if changed else " (already applied)"))
        return {"message": "Payment status updated", "changed": changed}


def payment_history(store: Store, user_id: str) -> List[dict]:
    payments = store.get_documents("payment", {"user_id": user_id}, sort=[("created_at", -1)])
    for payment in payments:
        order = store.get_document_by_id("order", payment["order_id"])
        payment["order"] = with_products(store, order) if order else None
    return payments
