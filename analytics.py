"""
Admin analytics: read-only rollups over orders, products and customers, plus CSV export.

The summarising functions are pure and take already-fetched documents, so they can
be reused by the dashboard and the exports. ``collect_dashboard`` does the fetching.
"""
import csv
import io
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import config
from database import as_naive_utc, db, get_documents, utcnow

PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
TREND_DAYS = 30
TOP_PRODUCTS = 10

COMPLETED_STATUSES = ("delivered", "completed")
PENDING_STATUSES = ("pending", "processing", "shipped")
CANCELLED_STATUSES = ("cancelled",)

EXPORT_TYPES = ("orders", "products", "customers", "revenue")


def resolve_range(period: str = "30d", start: Optional[datetime] = None, end: Optional[datetime] = None,
                  now: Optional[datetime] = None) -> Tuple[datetime, Optional[datetime]]:
    """Explicit start/end win; otherwise go back ``period`` days from now (unknown periods mean a year)."""
    if start and end:
        return as_naive_utc(start), as_naive_utc(end)
    now = now or utcnow()
    return now - timedelta(days=PERIOD_DAYS.get(period, 365)), None


def date_filter(start: datetime, end: Optional[datetime]) -> Dict[str, Any]:
    flt = {"$gte": start}
    if end is not None:
        flt["$lte"] = end
    return flt


def _status_bucket(status: str) -> Optional[str]:
    if status in COMPLETED_STATUSES:
        return "completed"
    if status in PENDING_STATUSES:
        return "pending"
    if status in CANCELLED_STATUSES:
        return "cancelled"
    return None


def summarize_orders(orders: List[Dict[str, Any]]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Return ``(revenue, order_stats)`` for the given orders."""
    by_status = {"completed": 0.0, "pending": 0.0, "cancelled": 0.0}
    counts = {"completed": 0, "pending": 0, "cancelled": 0}
    total_revenue = 0.0
    for order in orders:
        amount = float(order.get("total", 0))
        total_revenue += amount
        bucket = _status_bucket(order.get("status", "pending")) or "pending"
        by_status[bucket] += amount
        counts[bucket] += 1
    revenue = {
        "total": round(total_revenue, 2),
        "by_status": {k: round(v, 2) for k, v in by_status.items()},
    }
    stats = {
        "total": len(orders),
        "pending": counts["pending"],
        "completed": counts["completed"],
        "cancelled": counts["cancelled"],
        "average_order_value": round(total_revenue / len(orders), 2) if orders else 0,
    }
    return revenue, stats


def top_products(orders: Iterable[Dict[str, Any]], limit: int = TOP_PRODUCTS) -> List[Dict[str, Any]]:
    sales: Dict[str, Dict[str, Any]] = {}
    for order in orders:
        for item in order.get("items") or []:
            entry = sales.setdefault(item["product_id"], {
                "id": item["product_id"],
                "name": item.get("name") or "Unknown Product",
                "quantity": 0,
                "revenue": 0.0,
            })
            quantity = item.get("quantity") or 1
            entry["quantity"] += quantity
            entry["revenue"] += float(item.get("price") or 0) * quantity
    ranked = sorted(sales.values(), key=lambda e: e["revenue"], reverse=True)[:limit]
    for entry in ranked:
        entry["revenue"] = round(entry["revenue"], 2)
    return ranked


def _trend_days(now: datetime, days: int) -> List[datetime]:
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def daily_revenue(orders: Iterable[Dict[str, Any]], now: Optional[datetime] = None,
                  days: int = TREND_DAYS) -> List[Dict[str, Any]]:
    now = now or utcnow()
    totals: Dict[str, float] = {}
    for order in orders:
        created = as_naive_utc(order.get("created_at"))
        if created is not None:
            key = created.date().isoformat()
            totals[key] = totals.get(key, 0.0) + float(order.get("total", 0))
    return [
        {"date": day.date().isoformat(), "revenue": round(totals.get(day.date().isoformat(), 0.0), 2)}
        for day in _trend_days(now, days)
    ]


def customer_growth(customers: List[Dict[str, Any]], now: Optional[datetime] = None,
                    days: int = TREND_DAYS) -> List[Dict[str, Any]]:
    """Cumulative customer count at the end of each day in the window."""
    now = now or utcnow()
    joined = sorted(as_naive_utc(c["created_at"]) for c in customers if c.get("created_at"))
    series = []
    for day in _trend_days(now, days):
        day_end = day + timedelta(days=1)
        series.append({"date": day.date().isoformat(), "total": sum(1 for d in joined if d < day_end)})
    return series


def inventory_summary(products: List[Dict[str, Any]],
                      threshold: int = config.LOW_STOCK_THRESHOLD) -> Dict[str, Any]:
    active = [p for p in products if p.get("active", True)]
    low = sorted((p for p in active if p.get("stock", 0) <= threshold), key=lambda p: p.get("stock", 0))
    return {
        "total_products": len(active),
        "out_of_stock": sum(1 for p in active if p.get("stock", 0) == 0),
        "low_stock": [
            {"id": str(p["_id"]), "name": p["name"], "stock": p.get("stock", 0), "price": p.get("price")}
            for p in low[:10]
        ],
    }


def category_performance(products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    counts = Counter(p.get("category") for p in products if p.get("active", True))
    return [{"category": category, "product_count": count} for category, count in counts.items()]


def collect_dashboard(period: str = "30d", start: Optional[datetime] = None,
                      end: Optional[datetime] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    range_start, range_end = resolve_range(period, start, end, now)
    created = date_filter(range_start, range_end)

    orders = get_documents("order", {"created_at": created})
    trend_start = _trend_days(now, TREND_DAYS)[0]
    trend_orders = get_documents("order", {"created_at": {"$gte": trend_start}})
    customers = get_documents("user", {"role": "customer"})
    products = get_documents("product")

    revenue, order_stats = summarize_orders(orders)
    revenue["daily_trends"] = daily_revenue(trend_orders, now)
    recent = get_documents("order", limit=5, sort=[("created_at", -1)])
    new_customers = sum(
        1 for c in customers
        if c.get("created_at") and as_naive_utc(c["created_at"]) >= range_start
        and (range_end is None or as_naive_utc(c["created_at"]) <= range_end)
    )
    return {
        "revenue": revenue,
        "orders": order_stats,
        "top_products": top_products(orders),
        "customers": {
            "total": len(customers),
            "new": new_customers,
            "growth": customer_growth(customers, now),
        },
        "inventory": inventory_summary(products),
        "categories": category_performance(products),
        "recent_activity": [
            {
                "id": str(o["_id"]),
                "order_number": o.get("order_number"),
                "customer_name": o.get("customer_name"),
                "customer_email": o.get("customer_email"),
                "total": o.get("total"),
                "status": o.get("status"),
                "created_at": o.get("created_at"),
            }
            for o in recent
        ],
    }


# CSV export

def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def to_csv(header: List[str], rows: Iterable[List[Any]]) -> str:
    """Text cells are double-quoted (inner quotes doubled); numbers are left bare."""
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    buf.write(",".join(header) + "\n")
    for row in rows:
        writer.writerow([_cell(v) for v in row])
    return buf.getvalue()


def export_csv(export_type: str, start: Optional[datetime] = None, end: Optional[datetime] = None,
               now: Optional[datetime] = None) -> str:
    if export_type not in EXPORT_TYPES:
        raise ValueError(f"Unknown export type {export_type}")
    range_start, range_end = resolve_range("30d", start, end, now)
    created = date_filter(range_start, range_end)
    newest_first = [("created_at", -1)]

    if export_type == "orders":
        orders = get_documents("order", {"created_at": created}, sort=newest_first)
        return to_csv(
            ["Order Number", "Customer Name", "Customer Email", "Status", "Total", "Items Count", "Created At"],
            ([o["order_number"], o.get("customer_name"), o.get("customer_email"), o.get("status"),
              o.get("total"), len(o.get("items") or []), o.get("created_at")] for o in orders),
        )
    if export_type == "products":
        products = get_documents("product", {"active": True}, sort=[("name", 1)])
        return to_csv(
            ["Product ID", "Name", "Category", "Price", "Sale Price", "Stock", "Featured", "Active", "Created At"],
            ([str(p["_id"]), p["name"], p.get("category"), p.get("price"), p.get("sale_price"),
              p.get("stock", 0), p.get("featured", False), p.get("active", True), p.get("created_at")]
             for p in products),
        )
    if export_type == "customers":
        customers = get_documents("user", {"role": "customer", "created_at": created}, sort=newest_first)
        order_counts = Counter(o.get("customer_email") for o in db["order"].find({}, {"customer_email": 1}))
        return to_csv(
            ["Customer ID", "Name", "Email", "Phone", "Total Orders", "Registered At"],
            ([str(c["_id"]), c["name"], c["email"], c.get("phone"), order_counts.get(c["email"], 0),
              c.get("created_at")] for c in customers),
        )
    orders = get_documents("order", {"created_at": created}, sort=newest_first)
    return to_csv(
        ["Order Number", "Customer", "Amount", "Status", "Date"],
        ([o["order_number"], o.get("customer_name"), o.get("total"), o.get("status"), o.get("created_at")]
         for o in orders),
    )
