"""
Coupon evaluation and redemption.

Evaluation is a pure function of the coupon document, the subtotal and the clock.
Redemption bumps the ``uses`` counter with a compare-and-set on the value that was
validated, so two checkouts racing for the last use cannot both win.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from database import as_naive_utc, db, to_object_id, utcnow

logger = logging.getLogger("storefront.coupons")

PERCENTAGE = "PERCENTAGE"
FIXED = "FIXED"
DISCOUNT_TYPES = (PERCENTAGE, FIXED)

REDEEM_ATTEMPTS = 5


class CouponRejected(Exception):
    def __init__(self, reason: str, message: str, status_code: int = 400):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.status_code = status_code


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def discount_amount(coupon: Dict[str, Any], subtotal: float) -> float:
    value = float(coupon.get("discount_value", 0))
    if coupon.get("discount_type") == PERCENTAGE:
        discount = subtotal * value / 100.0
    else:
        discount = value
    return round(min(max(discount, 0.0), subtotal), 2)


def evaluate_coupon(coupon: Optional[Dict[str, Any]], subtotal: float,
                    now: Optional[datetime] = None) -> float:
    """Return the discount ``coupon`` grants on ``subtotal`` or raise CouponRejected."""
    if not coupon:
        raise CouponRejected("not_found", "Invalid coupon code", status_code=404)
    if not coupon.get("active", True):
        raise CouponRejected("inactive", "This coupon is no longer active")
    now = as_naive_utc(now) or utcnow()
    expires_at = as_naive_utc(coupon.get("expires_at"))
    if expires_at is not None and now > expires_at:
        raise CouponRejected("expired", "This coupon has expired")
    max_uses = coupon.get("max_uses")
    if max_uses is not None and coupon.get("uses", 0) >= max_uses:
        raise CouponRejected("exhausted", "This coupon has reached its usage limit")
    min_purchase = coupon.get("min_purchase")
    if min_purchase is not None and subtotal < min_purchase:
        raise CouponRejected("below_minimum", f"Minimum purchase of ${min_purchase:.2f} required")
    return discount_amount(coupon, subtotal)


def find_coupon(code: str) -> Optional[Dict[str, Any]]:
    return db["coupon"].find_one({"code": normalize_code(code)})


def redeem_coupon(code: str, subtotal: float) -> Tuple[Dict[str, Any], float]:
    for _ in range(REDEEM_ATTEMPTS):
        coupon = find_coupon(code)
        discount = evaluate_coupon(coupon, subtotal)
        result = db["coupon"].update_one(
            {"_id": coupon["_id"], "uses": coupon.get("uses", 0)},
            {"$inc": {"uses": 1}, "$set": {"updated_at": utcnow()}},
        )
        if result.modified_count == 1:
            logger.info("Redeemed coupon %s for %.2f", coupon["code"], discount)
            return coupon, discount
        logger.info("Coupon %s changed during redemption, retrying", coupon["code"])
    raise CouponRejected("contention", "Coupon is being redeemed elsewhere, please retry", status_code=409)


def release_coupon(coupon_id) -> None:
    """Give back one use taken by a checkout that did not complete."""
    if coupon_id is None:
        return
    db["coupon"].update_one({"_id": to_object_id(coupon_id), "uses": {"$gt": 0}}, {"$inc": {"uses": -1}})
