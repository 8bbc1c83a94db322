"""
Revenue and sales analytics.

Only ``completed`` transactions are counted.  Transactions are fetched
for the requested window and aggregated in Python; all day, week and
month boundaries are computed in UTC and weeks start on Sunday.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from gateflow_api.app.core.db import format_timestamp, get_connection, now_iso, parse_timestamp, utc_now
from gateflow_api.app.core.errors import InvalidInputError


logger = logging.getLogger(__name__)

ANALYTICS_PERIODS = ("day", "week", "month", "quarter", "year", "all")
GROUP_BY_VALUES = ("day", "week", "month")
TOP_PRODUCTS_SORT = ("revenue", "sales")
TOP_PRODUCTS_MAX_LIMIT = 50
DEFAULT_CURRENCY = "PLN"

_DEFAULT_GROUP_BY = {
    "day": "day",
    "week": "day",
    "month": "day",
    "quarter": "week",
    "year": "month",
    "all": "month",
}


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _week_start(day: date) -> date:
    return day - timedelta(days=(day.weekday() + 1) % 7)


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    return moment.replace(year=year, month=month, day=min(moment.day, 28))


def _check_period(period: str) -> None:
    if period not in ANALYTICS_PERIODS:
        raise InvalidInputError(f"Invalid period. Valid values: {', '.join(ANALYTICS_PERIODS)}")


def period_start(period: str, now: datetime) -> datetime:
    """Start of the window named by ``period``."""
    _check_period(period)
    today = _start_of_day(now)
    if period == "day":
        return today
    if period == "week":
        return now - timedelta(days=7)
    if period == "quarter":
        return _add_months(now, -3)
    if period == "year":
        return today.replace(month=1, day=1)
    if period == "all":
        return datetime(2020, 1, 1, tzinfo=timezone.utc)
    # month
    return today.replace(day=1)


def bucket_key(moment: datetime, group_by: str) -> str:
    if group_by == "week":
        return _week_start(moment.date()).isoformat()
    if group_by == "month":
        return f"{moment.year}-{moment.month:02d}"
    return moment.date().isoformat()


def _bucket_keys(start: datetime, end: datetime, group_by: str) -> List[str]:
    keys = set()
    current = start
    while current <= end:
        keys.add(bucket_key(current, group_by))
        if group_by == "week":
            current += timedelta(days=7)
        elif group_by == "month":
            current = _add_months(current, 1)
        else:
            current += timedelta(days=1)
    keys.add(bucket_key(end, group_by))
    return sorted(keys)


def _change_percent(current: float, previous: float) -> float:
    if previous > 0:
        return round((current - previous) / previous * 100, 2)
    return 100 if current > 0 else 0


def _fetch_completed(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    product_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    where = ["status = 'completed'"]
    params: List[Any] = []
    if start is not None:
        where.append("created_at >= ?")
        params.append(format_timestamp(start))
    if end is not None:
        where.append("created_at <= ?")
        params.append(format_timestamp(end))
    if product_id:
        where.append("product_id = ?")
        params.append(product_id)
    conn = get_connection()
    try:
        rows = conn.execute(
            "SELECT product_id, amount, currency, refunded_amount, created_at FROM payment_transactions "
            f"WHERE {' AND '.join(where)} ORDER BY created_at ASC",
            params,
        ).fetchall()
    finally:
        conn.close()
    return [
        {
            "product_id": row["product_id"],
            "amount": row["amount"],
            "currency": row["currency"] or DEFAULT_CURRENCY,
            "refunded_amount": row["refunded_amount"] or 0,
            "created_at": parse_timestamp(row["created_at"]),
        }
        for row in rows
    ]


class AnalyticsService:
    """Service class for dashboard, revenue and top product statistics."""

    @classmethod
    async def get_dashboard(cls, product_id: Optional[str] = None) -> Dict[str, Any]:
        now = utc_now()
        today = _start_of_day(now)
        week_start = datetime.combine(_week_start(today.date()), datetime.min.time(), tzinfo=timezone.utc)
        month_start = today.replace(day=1)

        transactions = _fetch_completed(product_id=product_id)
        today_tx = [tx for tx in transactions if tx["created_at"] >= today]
        week_tx = [tx for tx in transactions if tx["created_at"] >= week_start]
        month_tx = [tx for tx in transactions if tx["created_at"] >= month_start]

        by_currency: Dict[str, int] = defaultdict(int)
        for tx in transactions:
            by_currency[tx["currency"]] += tx["amount"]
        total = sum(tx["amount"] for tx in transactions)
        total_refunded = sum(tx["refunded_amount"] for tx in transactions)

        recent_activity = []
        for offset in range(6, -1, -1):
            day_start = today - timedelta(days=offset)
            day_end = day_start + timedelta(days=1)
            day_tx = [tx for tx in transactions if day_start <= tx["created_at"] < day_end]
            recent_activity.append({
                "date": day_start.date().isoformat(),
                "transactions": len(day_tx),
                "revenue": sum(tx["amount"] for tx in day_tx),
            })

        conn = get_connection()
        try:
            pending_refunds = conn.execute(
                "SELECT COUNT(*) FROM refund_requests WHERE status = 'pending'"
            ).fetchone()[0]
            total_products = conn.execute("SELECT COUNT(*) FROM products").fetchone()[0]
            active_products = conn.execute("SELECT COUNT(*) FROM products WHERE is_active = 1").fetchone()[0]
            total_users = conn.execute("SELECT COUNT(*) FROM user_access_stats").fetchone()[0]
            users_with_access = conn.execute(
                "SELECT COUNT(*) FROM user_access_stats WHERE total_products > 0"
            ).fetchone()[0]
        finally:
            conn.close()

        return {
            "revenue": {
                "today": sum(tx["amount"] for tx in today_tx),
                "this_week": sum(tx["amount"] for tx in week_tx),
                "this_month": sum(tx["amount"] for tx in month_tx),
                "total": total,
                "total_refunded": total_refunded,
                "net_revenue": total - total_refunded,
                "by_currency": dict(by_currency),
            },
            "transactions": {
                "today": len(today_tx),
                "this_week": len(week_tx),
                "this_month": len(month_tx),
                "total": len(transactions),
            },
            "products": {"active": active_products, "total": total_products},
            "users": {"total": total_users, "with_access": users_with_access},
            "refunds": {"pending_count": pending_refunds, "total_refunded": total_refunded},
            "recent_activity": recent_activity,
            "generated_at": now_iso(),
            "filters": {"product_id": product_id},
        }

    @classmethod
    async def get_revenue(
        cls,
        period: str = "month",
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        product_id: Optional[str] = None,
        group_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Revenue summary, bucketed breakdown and previous-period comparison.

        ``start_date`` overrides ``period``.  Buckets with no sales are
        included with zero revenue.
        """
        _check_period(period)
        now = utc_now()
        if group_by is not None and group_by not in GROUP_BY_VALUES:
            raise InvalidInputError(f"Invalid group_by. Valid values: {', '.join(GROUP_BY_VALUES)}")
        if start_date:
            start = parse_timestamp(start_date)
            if start is None:
                raise InvalidInputError("Invalid start_date format")
        else:
            start = period_start(period, now)
        group_by = group_by or _DEFAULT_GROUP_BY.get(period, "day")
        end = now
        if end_date:
            end = parse_timestamp(end_date)
            if end is None:
                raise InvalidInputError("Invalid end_date format")
        if end < start:
            raise InvalidInputError("end_date must be after start_date")

        transactions = _fetch_completed(start, end, product_id)
        total_revenue = sum(tx["amount"] for tx in transactions)
        total_refunded = sum(tx["refunded_amount"] for tx in transactions)
        count = len(transactions)

        by_currency: Dict[str, Dict[str, int]] = {}
        buckets: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for tx in transactions:
            entry = by_currency.setdefault(tx["currency"], {"revenue": 0, "transactions": 0, "refunded": 0})
            entry["revenue"] += tx["amount"]
            entry["transactions"] += 1
            entry["refunded"] += tx["refunded_amount"]
            buckets[bucket_key(tx["created_at"], group_by)].append(tx)

        breakdown = []
        for key in _bucket_keys(start, end, group_by):
            bucket = buckets.get(key, [])
            bucket_currency: Dict[str, int] = defaultdict(int)
            for tx in bucket:
                bucket_currency[tx["currency"]] += tx["amount"]
            breakdown.append({
                "date": key,
                "revenue": sum(tx["amount"] for tx in bucket),
                "transactions": len(bucket),
                "by_currency": dict(bucket_currency),
            })

        prev_end = start - timedelta(milliseconds=1)
        prev_start = prev_end - (end - start)
        previous = _fetch_completed(prev_start, prev_end, product_id)
        prev_revenue = sum(tx["amount"] for tx in previous)

        return {
            "summary": {
                "total_revenue": total_revenue,
                "total_refunded": total_refunded,
                "net_revenue": total_revenue - total_refunded,
                "total_transactions": count,
                "average_order_value": round(total_revenue / count, 2) if count else 0,
                "by_currency": by_currency,
            },
            "breakdown": breakdown,
            "comparison": {
                "previous_period": {
                    "start": format_timestamp(prev_start),
                    "end": format_timestamp(prev_end),
                },
                "previous_revenue": prev_revenue,
                "previous_transactions": len(previous),
                "revenue_change_percent": _change_percent(total_revenue, prev_revenue),
                "transactions_change_percent": _change_percent(count, len(previous)),
            },
            "filters": {
                "period": period,
                "start_date": format_timestamp(start),
                "end_date": format_timestamp(end),
                "product_id": product_id,
                "group_by": group_by,
            },
            "generated_at": now_iso(),
        }

    @classmethod
    async def get_top_products(
        cls, period: str = "month", limit: int = 10, sort_by: str = "revenue"
    ) -> Dict[str, Any]:
        if sort_by not in TOP_PRODUCTS_SORT:
            raise InvalidInputError('sort_by must be "revenue" or "sales"')
        limit = max(1, min(limit, TOP_PRODUCTS_MAX_LIMIT))
        start = period_start(period, utc_now())

        stats: Dict[str, Dict[str, Any]] = {}
        for tx in _fetch_completed(start):
            entry = stats.setdefault(tx["product_id"], {"revenue": 0, "sales_count": 0, "by_currency": {}})
            entry["revenue"] += tx["amount"]
            entry["sales_count"] += 1
            currency = entry["by_currency"].setdefault(tx["currency"], {"revenue": 0, "count": 0})
            currency["revenue"] += tx["amount"]
            currency["count"] += 1

        filters = {"period": period, "start_date": format_timestamp(start), "limit": limit, "sort_by": sort_by}
        if not stats:
            return {
                "products": [],
                "summary": {"total_products": 0, "total_revenue": 0, "total_sales": 0},
                "filters": filters,
                "generated_at": now_iso(),
            }

        product_ids = list(stats)
        placeholders = ", ".join("?" for _ in product_ids)
        conn = get_connection()
        try:
            rows = conn.execute(
                f"SELECT id, name, slug, price, currency, is_active FROM products WHERE id IN ({placeholders})",
                product_ids,
            ).fetchall()
        finally:
            conn.close()
        products = {row["id"]: row for row in rows}

        ranked = []
        for product_id, entry in stats.items():
            product = products.get(product_id)
            ranked.append({
                "product_id": product_id,
                "name": product["name"] if product else "Unknown Product",
                "slug": product["slug"] if product else "",
                "is_active": bool(product["is_active"]) if product else False,
                "current_price": product["price"] if product else 0,
                "current_currency": product["currency"] if product else DEFAULT_CURRENCY,
                "revenue": entry["revenue"],
                "sales_count": entry["sales_count"],
                "average_price": round(entry["revenue"] / entry["sales_count"], 2),
                "by_currency": entry["by_currency"],
            })
        sort_key = "revenue" if sort_by == "revenue" else "sales_count"
        ranked.sort(key=lambda item: item[sort_key], reverse=True)
        ranked = ranked[:limit]

        total_revenue = sum(item["revenue"] for item in ranked)
        total_sales = sum(item["sales_count"] for item in ranked)
        for rank, item in enumerate(ranked, start=1):
            item["rank"] = rank
            item["revenue_share"] = round(item["revenue"] / total_revenue * 100, 2) if total_revenue else 0
            item["sales_share"] = round(item["sales_count"] / total_sales * 100, 2) if total_sales else 0

        return {
            "products": ranked,
            "summary": {
                "total_products": len(ranked),
                "total_revenue": total_revenue,
                "total_sales": total_sales,
            },
            "filters": filters,
            "generated_at": now_iso(),
        }
