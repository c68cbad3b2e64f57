"""
Lifecycle rules for sales reports and fiber deliveries.

Reports:     pending -> approved | rejected            (both terminal)
Deliveries:  In Transit -> Delivered -> Completed       (Completed terminal)
             In Transit | Delivered -> Cancelled        (terminal, reason required)

A delivery is created already confirmed and `In Transit`. Field edits and
deletion are only allowed while it is still `In Transit`.
"""
from __future__ import annotations

from typing import Optional

from .audit import write_audit
from .errors import InvalidTransition, NotFound, PermissionDenied, ValidationError
from .logs import json_log
from .validation import parse_uuid

REPORT_PENDING = "pending"
REPORT_APPROVED = "approved"
REPORT_REJECTED = "rejected"

REPORT_TRANSITIONS = {
    REPORT_PENDING: {REPORT_APPROVED, REPORT_REJECTED},
    REPORT_APPROVED: set(),
    REPORT_REJECTED: set(),
}

DELIVERY_IN_TRANSIT = "In Transit"
DELIVERY_DELIVERED = "Delivered"
DELIVERY_COMPLETED = "Completed"
DELIVERY_CANCELLED = "Cancelled"

DELIVERY_TRANSITIONS = {
    DELIVERY_IN_TRANSIT: {DELIVERY_DELIVERED, DELIVERY_CANCELLED},
    DELIVERY_DELIVERED: {DELIVERY_COMPLETED, DELIVERY_CANCELLED},
    DELIVERY_COMPLETED: set(),
    DELIVERY_CANCELLED: set(),
}

DELIVERY_EDITABLE = {DELIVERY_IN_TRANSIT}


def is_terminal(transitions: dict, status: str) -> bool:
    return not transitions.get(status)


def assert_report_transition(current: str, target: str) -> None:
    if target not in REPORT_TRANSITIONS:
        raise ValidationError(f"unknown report status: {target}")
    if is_terminal(REPORT_TRANSITIONS, current):
        raise InvalidTransition(f"sales report is already {current}, a final state; cannot change it to {target}")
    if target not in REPORT_TRANSITIONS[current]:
        raise InvalidTransition(f"sales report is {current}; cannot change it to {target}")


def assert_delivery_transition(current: str, target: str) -> None:
    if target not in DELIVERY_TRANSITIONS:
        raise ValidationError(f"unknown delivery status: {target}")
    if is_terminal(DELIVERY_TRANSITIONS, current):
        raise InvalidTransition(f"delivery is {current}, a final state; cannot move it to {target}")
    if target not in DELIVERY_TRANSITIONS[current]:
        raise InvalidTransition(f"delivery is {current}; cannot move it to {target}")


def assert_delivery_editable(current: str, action: str) -> None:
    if current not in DELIVERY_EDITABLE:
        raise InvalidTransition(f"cannot {action} a delivery that is {current}; only In Transit deliveries can be changed")


def require_reason(reason: Optional[str], label: str) -> str:
    text = (reason or "").strip()
    if not text:
        raise ValidationError(f"{label} is required")
    return text


def review_sales_report(
    conn,
    report_id: str,
    reviewer: dict,
    decision: str,
    rejection_reason: Optional[str] = None,
) -> dict:
    """
    Approve or reject a pending report.

    The row is locked for the duration of the check so two reviewers racing on
    the same report cannot both succeed; the loser gets InvalidTransition.
    Totals and lines are never touched here.
    """
    if reviewer.get("role") != "reviewer":
        raise PermissionDenied("only reviewers can approve or reject sales reports")
    report_id = parse_uuid(report_id, "report_id")
    decision = (decision or "").strip().lower()
    if decision not in {REPORT_APPROVED, REPORT_REJECTED}:
        raise ValidationError("decision must be approved or rejected")
    reason = None
    if decision == REPORT_REJECTED:
        reason = require_reason(rejection_reason, "rejection_reason")

    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, status
                FROM sales_reports
                WHERE id=%s
                FOR UPDATE
                """,
                (report_id,),
            )
            row = cur.fetchone()
            if not row:
                raise NotFound("sales report not found")
            assert_report_transition(row["status"], decision)

            cur.execute(
                """
                UPDATE sales_reports
                SET status=%s, reviewed_by=%s, reviewed_at=now(), rejection_reason=%s
                WHERE id=%s
                RETURNING id, farmer_id, report_month, total_revenue, total_quantity, transaction_count,
                          notes, status, submitted_at, reviewed_by, reviewed_at, rejection_reason
                """,
                (decision, reviewer["actor_id"], reason, report_id),
            )
            updated = cur.fetchone()
            write_audit(
                cur,
                reviewer,
                f"sales_report_{decision}",
                "sales_report",
                report_id,
                {"from": row["status"], "to": decision, "reason": reason},
            )

    json_log("info", "sales_report.reviewed", report_id=report_id, decision=decision, reviewer_id=reviewer["actor_id"])
    return updated
