"""
Stripe payment bridge.

Intents are created server side for the order total; the browser widget confirms
them with the client secret. Order payment status is only ever advanced by
``record_payment_succeeded``, which is keyed on the intent id and safe to call
any number of times (webhook retries, client confirm after webhook, ...). A success
that lands on an order cancelled in the meantime is refunded rather than recorded.
"""
import logging
from typing import Any, Dict, Optional, Tuple

import stripe
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
from database import create_document, db, utcnow
from schemas import PaymentEvent

logger = logging.getLogger("storefront.payments")

if config.STRIPE_SECRET:
    stripe.api_key = config.STRIPE_SECRET


class PaymentError(Exception):
    def __init__(self, message: str, status_code: int = 402):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def _require_stripe():
    if not config.STRIPE_SECRET:
        raise PaymentError("Stripe not configured", status_code=400)
    stripe.api_key = config.STRIPE_SECRET


def create_payment_intent(order_number: str, amount: float, customer_email: str,
                          customer_name: str, currency: str = config.PRIMARY_CURRENCY) -> Tuple[str, str]:
    """Create an intent for ``amount`` and return ``(intent_id, client_secret)``."""
    _require_stripe()
    try:
        intent = stripe.PaymentIntent.create(
            amount=to_minor_units(amount),
            currency=currency.lower(),
            metadata={"order_number": order_number, "customer_email": customer_email},
            description=f"Order {order_number} for {customer_name}",
            idempotency_key=f"intent-{order_number}",
        )
    except stripe.StripeError as exc:
        logger.warning("PaymentIntent creation failed for %s: %s", order_number, exc)
        raise PaymentError(exc.user_message or "Payment provider error")
    return intent.id, intent.client_secret


def retrieve_payment_intent(intent_id: str):
    _require_stripe()
    try:
        return stripe.PaymentIntent.retrieve(intent_id)
    except stripe.StripeError as exc:
        logger.warning("PaymentIntent lookup failed for %s: %s", intent_id, exc)
        raise PaymentError(exc.user_message or "Payment provider error")


def construct_event(payload: bytes, signature: Optional[str]):
    if not config.STRIPE_WEBHOOK_SECRET:
        raise PaymentError("Webhook secret not configured", status_code=400)
    try:
        return stripe.Webhook.construct_event(payload, signature, config.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("Rejected webhook payload: %s", exc)
        raise PaymentError("Invalid payload", status_code=400)


def claim_event(event_id: str, event_type: str, intent_id: Optional[str]) -> bool:
    """Record a provider event; False when it has been processed before."""
    try:
        create_document("paymentevent", PaymentEvent(event_id=event_id, type=event_type, intent_id=intent_id))
    except DuplicateKeyError:
        logger.info("Skipping already processed event %s", event_id)
        return False
    return True


def cancel_payment_intent(intent_id: str) -> bool:
    """Void an unpaid intent. Failures are logged; a later success on it is refunded instead."""
    try:
        _require_stripe()
        stripe.PaymentIntent.cancel(intent_id)
    except (PaymentError, stripe.StripeError) as exc:
        logger.warning("PaymentIntent cancel failed for %s: %s", intent_id, exc)
        return False
    logger.info("Cancelled PaymentIntent %s", intent_id)
    return True


def refund_payment(intent_id: str):
    _require_stripe()
    try:
        return stripe.Refund.create(payment_intent=intent_id, idempotency_key=f"refund-{intent_id}")
    except stripe.StripeError as exc:
        logger.error("Refund failed for %s: %s", intent_id, exc)
        raise PaymentError(exc.user_message or "Payment provider error")


def _refund_cancelled_order(order: Dict[str, Any]) -> Dict[str, Any]:
    logger.warning("Payment %s succeeded for cancelled order %s, refunding",
                   order["payment_id"], order["order_number"])
    now = utcnow()
    try:
        refund_payment(order["payment_id"])
        changes = {"payment_status": "refunded", "refunded_at": now, "updated_at": now}
    except PaymentError:
        # Money was taken and not returned; keep it visible to staff.
        changes = {"payment_status": "paid", "paid_at": now, "updated_at": now}
    return db["order"].find_one_and_update(
        {"_id": order["_id"], "payment_status": {"$nin": ["paid", "refunded"]}},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    ) or db["order"].find_one({"_id": order["_id"]})


def record_payment_succeeded(intent_id: str) -> Optional[Dict[str, Any]]:
    now = utcnow()
    order = db["order"].find_one_and_update(
        {"payment_id": intent_id, "payment_status": {"$nin": ["paid", "refunded"]}, "status": {"$ne": "cancelled"}},
        {"$set": {"payment_status": "paid", "paid_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        order = db["order"].find_one({"payment_id": intent_id})
        if order and order.get("status") == "cancelled" and order.get("payment_status") not in ("paid", "refunded"):
            return _refund_cancelled_order(order)
        return order
    logger.info("Payment recorded for order %s", order["order_number"])
    if order.get("status") == "pending":
        order = db["order"].find_one_and_update(
            {"_id": order["_id"], "status": "pending"},
            {"$set": {"status": "processing", "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        ) or db["order"].find_one({"_id": order["_id"]})
    return order


def record_payment_failed(intent_id: str) -> Optional[Dict[str, Any]]:
    return db["order"].find_one_and_update(
        {"payment_id": intent_id, "payment_status": "pending"},
        {"$set": {"payment_status": "failed", "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
