"""
Read-only rollups for the officer and farmer dashboards.

Sales figures only ever include `approved` reports. Each rollup is a single
SELECT, so it reads one consistent snapshot and never blocks writers.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from .amounts import exact_sum, q_money, to_decimal
from .validation import parse_uuid
from .workflow import DELIVERY_CANCELLED, DELIVERY_TRANSITIONS

_APPROVED_BY_PRODUCER_SQL = """
    SELECT sr.farmer_id,
           f.full_name AS farmer_name,
           COUNT(*)::int AS report_count,
           COALESCE(SUM(sr.total_revenue), 0) AS total_revenue,
           COALESCE(SUM(sr.total_quantity), 0) AS total_quantity,
           COALESCE(SUM(sr.transaction_count), 0)::int AS total_transactions,
           MIN(sr.submitted_at) AS first_submitted_at,
           MAX(sr.submitted_at) AS last_report_date
    FROM sales_reports sr
    JOIN farmers f ON f.id = sr.farmer_id
    WHERE sr.status = 'approved'
"""


def approved_by_producer(cur, period: Optional[str] = None) -> list:
    sql = _APPROVED_BY_PRODUCER_SQL
    params: list = []
    if period:
        sql += " AND sr.report_month = %s"
        params.append(period)
    sql += """
    GROUP BY sr.farmer_id, f.full_name
    ORDER BY total_revenue DESC, first_submitted_at ASC
    """
    cur.execute(sql, params)
    return cur.fetchall() or []


def summarize_approved(rows: Iterable[dict], period: Optional[str] = None) -> dict:
    rows = list(rows)
    producers = len(rows)
    total_revenue = exact_sum(r["total_revenue"] for r in rows)
    total_quantity = exact_sum(r["total_quantity"] for r in rows)
    total_transactions = sum(int(r["total_transactions"] or 0) for r in rows)

    top = None
    for r in rows:
        if top is None or to_decimal(r["total_revenue"]) > to_decimal(top["total_revenue"]):
            top = r

    return {
        "period": period,
        "total_farmers": producers,
        "total_revenue": total_revenue,
        "total_quantity": total_quantity,
        "total_transactions": total_transactions,
        "average_revenue_per_farmer": q_money(total_revenue / producers) if producers else Decimal("0"),
        "top_farmer": (
            {
                "farmer_id": top["farmer_id"],
                "farmer_name": top["farmer_name"],
                "total_revenue": to_decimal(top["total_revenue"]),
            }
            if top
            else None
        ),
    }


def get_analytics(conn, period: Optional[str] = None) -> dict:
    with conn.cursor() as cur:
        rows = approved_by_producer(cur, period)
    return summarize_approved(rows, period)


def farmers_performance(conn, period: Optional[str] = None) -> list:
    with conn.cursor() as cur:
        rows = approved_by_producer(cur, period)
    out = []
    for r in rows:
        qty = to_decimal(r["total_quantity"])
        revenue = to_decimal(r["total_revenue"])
        out.append(
            {
                "farmer_id": r["farmer_id"],
                "farmer_name": r["farmer_name"],
                "total_reports": r["report_count"],
                "total_revenue": revenue,
                "total_quantity": qty,
                "total_transactions": r["total_transactions"],
                "average_price_per_kg": q_money(revenue / qty) if qty else Decimal("0"),
                "last_report_date": r["last_report_date"],
            }
        )
    return out


def summarize_deliveries(rows: Iterable[dict]) -> dict:
    stats = {
        "total_deliveries": 0,
        "by_status": {status: 0 for status in DELIVERY_TRANSITIONS},
        "total_quantity": Decimal("0"),
        "total_revenue": Decimal("0"),
        "pending_payment": Decimal("0"),
    }
    for r in rows:
        stats["total_deliveries"] += 1
        stats["by_status"][r["status"]] = stats["by_status"].get(r["status"], 0) + 1
        if r["status"] == DELIVERY_CANCELLED:
            continue
        stats["total_quantity"] += to_decimal(r["quantity_kg"])
        if r["payment_status"] == "Paid":
            stats["total_revenue"] += to_decimal(r["total_amount"])
        else:
            stats["pending_payment"] += to_decimal(r["total_amount"])
    return stats


def delivery_stats(conn, farmer_id: str) -> dict:
    farmer_id = parse_uuid(farmer_id, "farmer_id")
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT status, payment_status, total_amount, quantity_kg
            FROM fiber_deliveries
            WHERE farmer_id=%s
            """,
            (farmer_id,),
        )
        rows = cur.fetchall() or []
    return summarize_deliveries(rows)
