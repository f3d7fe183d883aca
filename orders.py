"""
Order assembly: catalog pricing, totals, stock reservation and status changes.
"""
import logging
import secrets
import string
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
import payments
from coupons import redeem_coupon, release_coupon
from database import db, to_object_id, utcnow
from schemas import Address, Order, OrderItem

logger = logging.getLogger("storefront.orders")

# Allowed status moves; anything not listed is rejected.
STATUS_TRANSITIONS = {
    "pending": {"processing", "cancelled"},
    "processing": {"shipped", "completed", "cancelled"},
    "shipped": {"delivered", "cancelled"},
    "delivered": {"completed"},
    "completed": set(),
    "cancelled": set(),
}

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


class OrderError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def unit_price(product: Dict[str, Any], variant: Optional[Dict[str, Any]] = None) -> float:
    if variant is not None and variant.get("price") is not None:
        return float(variant["price"])
    if product.get("sale_price") is not None:
        return float(product["sale_price"])
    return float(product["price"])


def compute_totals(subtotal: float, discount: float = 0.0) -> Dict[str, float]:
    subtotal = round(subtotal, 2)
    discount = round(min(max(discount, 0.0), subtotal), 2)
    shipping = 0.0 if subtotal >= config.FREE_SHIPPING_THRESHOLD else config.SHIPPING_FLAT
    tax = round((subtotal - discount) * config.TAX_RATE, 2)
    total = round(subtotal - discount + shipping + tax, 2)
    return {"subtotal": subtotal, "discount": discount, "shipping": shipping, "tax": tax, "total": total}


def price_line_items(items: Iterable[Any]) -> List[OrderItem]:
    """Read current catalog prices for each requested line and freeze them.

    ``items`` are CartItem-like objects with ``product_id``, ``variant_id`` and
    ``quantity``.
    """
    lines: List[OrderItem] = []
    for item in items:
        if item.quantity < 1:
            raise OrderError("Quantity must be at least 1")
        product_oid = to_object_id(item.product_id)
        product = db["product"].find_one({"_id": product_oid}) if product_oid else None
        if not product:
            raise OrderError(f"Product {item.product_id} not found", status_code=404)
        if not product.get("active", True):
            raise OrderError(f"{product['name']} is not available")
        variant = None
        if item.variant_id:
            variant_oid = to_object_id(item.variant_id)
            variant = db["productvariant"].find_one(
                {"_id": variant_oid, "product_id": item.product_id}) if variant_oid else None
            if not variant:
                raise OrderError(f"Variant {item.variant_id} not found", status_code=404)
            if not variant.get("active", True):
                raise OrderError(f"{product['name']} ({variant['name']}) is not available")
        price = unit_price(product, variant)
        images = product.get("images") or []
        lines.append(OrderItem(
            product_id=str(product["_id"]),
            variant_id=str(variant["_id"]) if variant else None,
            sku=variant["sku"] if variant else product.get("sku"),
            name=f"{product['name']} ({variant['name']})" if variant else product["name"],
            price=price,
            quantity=item.quantity,
            subtotal=round(price * item.quantity, 2),
            variant=variant.get("attributes") if variant else None,
            image=images[0] if images else None,
        ))
    return lines


def _stock_target(line: Dict[str, Any]) -> Tuple[str, Any]:
    if line.get("variant_id"):
        return "productvariant", to_object_id(line["variant_id"])
    return "product", to_object_id(line["product_id"])


def release_stock(lines: Iterable[Dict[str, Any]]) -> None:
    for line in lines:
        collection, oid = _stock_target(line)
        db[collection].update_one({"_id": oid}, {"$inc": {"stock": line["quantity"]}})


def reserve_stock(lines: List[Dict[str, Any]]) -> None:
    """Decrement stock for every line or for none of them."""
    reserved = []
    for line in lines:
        collection, oid = _stock_target(line)
        result = db[collection].update_one(
            {"_id": oid, "stock": {"$gte": line["quantity"]}},
            {"$inc": {"stock": -line["quantity"]}},
        )
        if result.modified_count != 1:
            release_stock(reserved)
            raise OrderError(f"Insufficient stock for {line['name']}", status_code=409)
        reserved.append(line)


def existing_order(idempotency_key: Optional[str]) -> Optional[Dict[str, Any]]:
    if not idempotency_key:
        return None
    return db["order"].find_one({"idempotency_key": idempotency_key})


def _replay(order: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[str]]:
    client_secret = None
    if order.get("payment_provider") == "stripe" and order.get("payment_id"):
        client_secret = payments.retrieve_payment_intent(order["payment_id"]).client_secret
    return order, client_secret


def _undo_checkout(lines: List[Dict[str, Any]], coupon: Optional[Dict[str, Any]],
                   payment_id: Optional[str] = None) -> None:
    release_stock(lines)
    release_coupon(coupon["_id"] if coupon else None)
    if payment_id:
        payments.cancel_payment_intent(payment_id)


def create_order(customer_name: str, customer_email: str, shipping_address: Address,
                 items: Iterable[Any], billing_address: Optional[Address] = None,
                 customer_phone: Optional[str] = None, coupon_code: Optional[str] = None,
                 user_id: Optional[str] = None, payment_provider: str = "stripe",
                 idempotency_key: Optional[str] = None) -> Tuple[Dict[str, Any], Optional[str]]:
    """Persist an order and open its payment. Returns ``(order_doc, client_secret)``."""
    existing = existing_order(idempotency_key)
    if existing:
        logger.info("Replaying order %s for idempotency key", existing["order_number"])
        return _replay(existing)

    if payment_provider == "dummy" and not config.ENABLE_DUMMY_PAYMENTS:
        raise OrderError("Payment provider not available")
    if payment_provider not in ("stripe", "dummy"):
        raise OrderError(f"Unknown payment provider {payment_provider}")

    lines = price_line_items(items)
    if not lines:
        raise OrderError("Cart is empty")
    line_dicts = [line.model_dump() for line in lines]
    subtotal = sum(line.subtotal for line in lines)

    coupon = None
    discount = 0.0
    if coupon_code:
        coupon, discount = redeem_coupon(coupon_code, round(subtotal, 2))
    totals = compute_totals(subtotal, discount)

    try:
        reserve_stock(line_dicts)
    except OrderError:
        release_coupon(coupon["_id"] if coupon else None)
        raise

    order_number = generate_order_number()
    payment_id = None
    client_secret = None
    if payment_provider == "stripe":
        try:
            payment_id, client_secret = payments.create_payment_intent(
                order_number, totals["total"], customer_email, customer_name)
        except payments.PaymentError:
            _undo_checkout(line_dicts, coupon)
            raise

    order = Order(
        order_number=order_number,
        user_id=user_id,
        customer_name=customer_name,
        customer_email=customer_email,
        customer_phone=customer_phone,
        items=lines,
        coupon_code=coupon["code"] if coupon else None,
        coupon_id=str(coupon["_id"]) if coupon else None,
        currency=config.PRIMARY_CURRENCY,
        shipping_address=shipping_address,
        billing_address=billing_address or shipping_address,
        payment_provider=payment_provider,
        payment_id=payment_id,
        idempotency_key=idempotency_key,
        **totals,
    )
    if payment_provider == "dummy":
        order.payment_status = "paid"
        order.status = "processing"
        order.paid_at = utcnow()
    payload = order.model_dump()
    if payload["idempotency_key"] is None:
        # The unique index on idempotency_key is sparse; keyless orders leave the field out.
        del payload["idempotency_key"]
    payload["created_at"] = utcnow()
    payload["updated_at"] = payload["created_at"]
    try:
        result = db["order"].insert_one(payload)
    except DuplicateKeyError:
        _undo_checkout(line_dicts, coupon, payment_id)
        existing = existing_order(idempotency_key)
        if existing is None:
            raise
        logger.info("Concurrent checkout lost the race for order %s", existing["order_number"])
        return _replay(existing)
    except PyMongoError:
        _undo_checkout(line_dicts, coupon, payment_id)
        raise
    payload["_id"] = result.inserted_id
    logger.info("Created order %s total=%.2f items=%d", order_number, totals["total"], len(lines))
    return payload, client_secret


def cancel_order(order: Dict[str, Any], cancel_intent: bool = True) -> Dict[str, Any]:
    """Cancel an order, returning its stock and coupon use. No-op if already cancelled.

    An unpaid Stripe intent is voided too, unless the caller is reacting to Stripe
    having cancelled it already.
    """
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$ne": "cancelled"}},
        {"$set": {"status": "cancelled", "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        return db["order"].find_one({"_id": order["_id"]})
    release_stock(updated["items"])
    release_coupon(updated.get("coupon_id"))
    if (cancel_intent and updated.get("payment_provider") == "stripe" and updated.get("payment_id")
            and updated.get("payment_status") not in ("paid", "refunded")):
        payments.cancel_payment_intent(updated["payment_id"])
    logger.info("Cancelled order %s", updated["order_number"])
    return updated


def update_status(order: Dict[str, Any], status: Optional[str] = None,
                  payment_status: Optional[str] = None) -> Dict[str, Any]:
    current = order.get("status", "pending")
    if status and status != current:
        if status not in STATUS_TRANSITIONS.get(current, set()):
            raise OrderError(f"Cannot move order from {current} to {status}")
        if status == "cancelled":
            order = cancel_order(order)
    changes: Dict[str, Any] = {}
    if status and status not in (current, "cancelled"):
        changes["status"] = status
    if payment_status and payment_status != order.get("payment_status"):
        changes["payment_status"] = payment_status
        if payment_status == "paid":
            changes["paid_at"] = utcnow()
    if not changes:
        return order
    changes["updated_at"] = utcnow()
    return db["order"].find_one_and_update(
        {"_id": order["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER)


def cancel_unpaid_order_for_intent(intent_id: str) -> Optional[Dict[str, Any]]:
    order = db["order"].find_one({"payment_id": intent_id, "payment_status": {"$ne": "paid"}})
    if order and order.get("status") == "pending":
        return cancel_order(order, cancel_intent=False)
    return order
