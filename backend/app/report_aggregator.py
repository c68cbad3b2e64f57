"""
Sales report aggregation.

A farmer's raw per-sale entries are folded into one monthly `sales_reports`
row plus one `sales_transactions` row per entry. Header totals are derived
here, never taken from the client, and the header and its lines are written in
a single transaction: readers see all N+1 rows or none.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

import psycopg
from psycopg import errors as pg_errors

from .amounts import exact_sum, line_total_matches, q_kg, q_money
from .audit import write_audit
from .config import settings
from .errors import NotFound, PermissionDenied, PersistenceFailure, ValidationError
from .logs import json_log
from .schemas import SalesReportIn, SalesTransactionIn
from .validation import parse_report_status, parse_uuid


@dataclass(frozen=True)
class ReportTotals:
    total_revenue: Decimal
    total_quantity: Decimal
    transaction_count: int


def compute_report_totals(transactions: Iterable[SalesTransactionIn]) -> ReportTotals:
    lines = list(transactions)
    if not lines:
        raise ValidationError("at least one transaction is required")
    return ReportTotals(
        total_revenue=exact_sum(q_money(t.total_amount) for t in lines),
        total_quantity=exact_sum(q_kg(t.quantity_kg) for t in lines),
        transaction_count=len(lines),
    )


def validate_transactions(transactions: Iterable[SalesTransactionIn]) -> None:
    # Checked against the quantized values, which are what gets stored.
    for idx, t in enumerate(transactions, start=1):
        if t.total_amount < 0:
            raise ValidationError(f"transaction {idx}: total_amount must be >= 0")
        qty, price, total = q_kg(t.quantity_kg), q_money(t.price_per_kg), q_money(t.total_amount)
        if not line_total_matches(qty, price, total):
            raise ValidationError(
                f"transaction {idx}: total_amount {total} does not equal "
                f"quantity_kg x price_per_kg ({qty} x {price})"
            )


def resolve_period_filter(period: Optional[str], today: Optional[date] = None) -> Optional[str]:
    """Accept an explicit YYYY-MM or the `current_month` / `last_month` aliases."""
    p = (period or "").strip().lower()
    if not p:
        return None
    today = today or date.today()
    if p == "current_month":
        return f"{today.year:04d}-{today.month:02d}"
    if p == "last_month":
        year, month = (today.year, today.month - 1) if today.month > 1 else (today.year - 1, 12)
        return f"{year:04d}-{month:02d}"
    if len(p) == 7 and p[4] == "-" and p[:4].isdigit() and p[5:].isdigit() and 1 <= int(p[5:]) <= 12:
        return p
    raise ValidationError("period must be YYYY-MM, current_month or last_month")


def _existing_report_for_key(cur, farmer_id: str, key: str):
    cur.execute(
        """
        SELECT id, total_revenue, total_quantity, transaction_count, status
        FROM sales_reports
        WHERE farmer_id=%s AND idempotency_key=%s
        """,
        (farmer_id, key),
    )
    return cur.fetchone()


def submit_sales_report(conn, actor: dict, data: SalesReportIn) -> dict:
    farmer_id = parse_uuid(data.farmer_id, "farmer_id")
    if actor["role"] == "farmer" and actor["actor_id"] != farmer_id:
        raise PermissionDenied("farmers can only submit their own sales reports")
    validate_transactions(data.transactions)
    totals = compute_report_totals(data.transactions)
    notes = (data.notes or "").strip() or None
    key = (data.idempotency_key or "").strip() or None

    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute("SELECT 1 FROM farmers WHERE id=%s", (farmer_id,))
            if not cur.fetchone():
                raise NotFound("farmer not found")

            if key:
                existing = _existing_report_for_key(cur, farmer_id, key)
                if existing:
                    json_log("info", "sales_report.duplicate", report_id=existing["id"], farmer_id=farmer_id)
                    return {"id": existing["id"], "duplicate": True, **_totals_out(existing)}

            try:
                # Savepoint: a concurrent submit with the same key may commit first.
                with conn.transaction():
                    cur.execute(
                        """
                        INSERT INTO sales_reports
                          (id, farmer_id, report_month, total_revenue, total_quantity, transaction_count,
                           notes, status, submitted_at, idempotency_key)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, 'pending', now(), %s)
                        RETURNING id
                        """,
                        (
                            farmer_id,
                            data.report_month,
                            totals.total_revenue,
                            totals.total_quantity,
                            totals.transaction_count,
                            notes,
                            key,
                        ),
                    )
                    report_id = cur.fetchone()["id"]
            except pg_errors.UniqueViolation:
                existing = _existing_report_for_key(cur, farmer_id, key) if key else None
                if not existing:
                    raise
                json_log(
                    "info", "sales_report.duplicate", report_id=existing["id"], farmer_id=farmer_id, raced=True
                )
                return {"id": existing["id"], "duplicate": True, **_totals_out(existing)}

            for idx, t in enumerate(data.transactions, start=1):
                try:
                    cur.execute(
                        """
                        INSERT INTO sales_transactions
                          (id, report_id, line_no, buyer_name, fiber_grade, quantity_kg,
                           price_per_kg, total_amount, sale_date, payment_method)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            report_id,
                            idx,
                            t.buyer_name,
                            t.fiber_grade,
                            q_kg(t.quantity_kg),
                            q_money(t.price_per_kg),
                            q_money(t.total_amount),
                            t.sale_date,
                            t.payment_method or settings.default_payment_method,
                        ),
                    )
                except psycopg.Error as exc:
                    json_log(
                        "error",
                        "ledger.persistence_failure",
                        operation="submit_sales_report",
                        farmer_id=farmer_id,
                        line_no=idx,
                        error=str(exc),
                    )
                    raise PersistenceFailure(f"failed to store transaction {idx}: {exc}") from exc

            write_audit(
                cur,
                actor,
                "sales_report_submitted",
                "sales_report",
                report_id,
                {
                    "report_month": data.report_month,
                    "transactions": totals.transaction_count,
                    "total_revenue": totals.total_revenue,
                },
            )

    json_log(
        "info",
        "sales_report.submitted",
        report_id=report_id,
        farmer_id=farmer_id,
        report_month=data.report_month,
        transactions=totals.transaction_count,
    )
    return {
        "id": report_id,
        "duplicate": False,
        "total_revenue": totals.total_revenue,
        "total_quantity": totals.total_quantity,
        "transaction_count": totals.transaction_count,
    }


def _totals_out(row: dict) -> dict:
    return {
        "total_revenue": row["total_revenue"],
        "total_quantity": row["total_quantity"],
        "transaction_count": row["transaction_count"],
    }


REPORT_COLUMNS = """
    sr.id, sr.farmer_id, f.full_name AS farmer_name, sr.report_month,
    sr.total_revenue, sr.total_quantity, sr.transaction_count, sr.notes,
    sr.status, sr.submitted_at, sr.reviewed_by, sr.reviewed_at, sr.rejection_reason
"""


def list_sales_reports(
    conn,
    *,
    status: Optional[str] = None,
    period: Optional[str] = None,
    farmer_id: Optional[str] = None,
    limit: int = 200,
) -> list:
    sql = f"""
        SELECT {REPORT_COLUMNS}
        FROM sales_reports sr
        JOIN farmers f ON f.id = sr.farmer_id
        WHERE 1=1
    """
    params: list = []
    if status:
        sql += " AND sr.status=%s"
        params.append(parse_report_status(status))
    if period:
        sql += " AND sr.report_month=%s"
        params.append(period)
    if farmer_id:
        sql += " AND sr.farmer_id=%s"
        params.append(farmer_id)
    sql += " ORDER BY sr.submitted_at DESC LIMIT %s"
    params.append(limit)
    with conn.cursor() as cur:
        cur.execute(sql, params)
        return cur.fetchall()


def get_sales_report(conn, report_id: str) -> dict:
    report_id = parse_uuid(report_id, "report_id")
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {REPORT_COLUMNS}
            FROM sales_reports sr
            JOIN farmers f ON f.id = sr.farmer_id
            WHERE sr.id=%s
            """,
            (report_id,),
        )
        report = cur.fetchone()
        if not report:
            raise NotFound("sales report not found")
        # Lines are insert-only and commit with their header.
        cur.execute(
            """
            SELECT id, line_no, buyer_name, fiber_grade, quantity_kg, price_per_kg,
                   total_amount, sale_date, payment_method
            FROM sales_transactions
            WHERE report_id=%s
            ORDER BY line_no ASC
            """,
            (report_id,),
        )
        lines = cur.fetchall() or []
    return {"report": report, "transactions": lines}
