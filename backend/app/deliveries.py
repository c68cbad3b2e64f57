from __future__ import annotations

from datetime import date
from typing import Optional

from psycopg import errors as pg_errors

from .amounts import line_total, q_kg, q_money
from .audit import write_audit
from .deps import is_staff
from .errors import (
    InsufficientQuantity,
    InvalidTransition,
    LotAlreadyClaimed,
    LotNotFound,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from .inventory_allocator import check_quantity_fits, claim_lot, lock_lot, mark_claimed, release_lot
from .logs import json_log
from .schemas import DeliveryCreateIn, DeliveryPaymentIn, DeliveryUpdateIn
from .validation import parse_delivery_status, parse_uuid, parse_uuid_optional
from .workflow import (
    DELIVERY_CANCELLED,
    DELIVERY_COMPLETED,
    DELIVERY_DELIVERED,
    assert_delivery_editable,
    assert_delivery_transition,
    require_reason,
)

_UPDATABLE_FIELDS = [
    "delivery_date",
    "delivery_time",
    "quantity_kg",
    "price_per_kg",
    "delivery_method",
    "pickup_location",
    "delivery_location",
    "farmer_contact",
    "buyer_contact",
    "payment_method",
    "notes",
]

_TEXT_FIELDS = {"pickup_location", "buyer_contact", "notes"}


def _clean(v: Optional[str]) -> Optional[str]:
    return (v or "").strip() or None


def _resolve_farmer_id(actor: dict, requested: Optional[str]) -> str:
    farmer_id = parse_uuid_optional(requested, "farmer_id")
    if actor["role"] == "farmer":
        if farmer_id and farmer_id != actor["actor_id"]:
            raise PermissionDenied("farmers can only create deliveries for their own fiber")
        return actor["actor_id"]
    if not farmer_id:
        raise ValidationError("farmer_id is required when acting on behalf of a farmer")
    return farmer_id


def _lock_delivery(cur, delivery_id: str) -> dict:
    cur.execute(
        """
        SELECT *
        FROM fiber_deliveries
        WHERE id=%s
        FOR UPDATE
        """,
        (delivery_id,),
    )
    row = cur.fetchone()
    if not row:
        raise NotFound("delivery not found")
    return row


def _assert_owner_or_staff(actor: dict, delivery: dict) -> None:
    if is_staff(actor):
        return
    if actor["role"] == "farmer" and str(delivery["farmer_id"]) == actor["actor_id"]:
        return
    raise PermissionDenied("only the delivering farmer or cooperative staff can change this delivery")


def _assert_party(actor: dict, delivery: dict) -> None:
    if is_staff(actor):
        return
    if actor["role"] == "farmer" and str(delivery["farmer_id"]) == actor["actor_id"]:
        return
    if actor["role"] == "buyer" and str(delivery["buyer_id"]) == actor["actor_id"]:
        return
    raise PermissionDenied("access denied")


def create_delivery(conn, actor: dict, data: DeliveryCreateIn) -> dict:
    """
    Claim an inventory lot and open a delivery against it.

    The delivery starts confirmed and `In Transit`; variety and grade come
    from the lot. Lot lookup, claim check, delivery insert and lot flip all
    commit together.
    """
    farmer_id = _resolve_farmer_id(actor, data.farmer_id)
    lot_id = parse_uuid(data.lot_id, "lot_id")
    buyer_id = parse_uuid(data.buyer_id, "buyer_id")
    quantity = q_kg(data.quantity_kg)
    price = q_money(data.price_per_kg)
    total = line_total(quantity, price)

    try:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, business_name, contact_number, business_address
                    FROM buyers
                    WHERE id=%s
                    """,
                    (buyer_id,),
                )
                buyer = cur.fetchone()
                if not buyer:
                    raise NotFound("buyer not found")

                lot = claim_lot(cur, lot_id, quantity)
                if str(lot["farmer_id"]) != farmer_id:
                    raise PermissionDenied("inventory lot belongs to another farmer")

                try:
                    cur.execute(
                        """
                        INSERT INTO fiber_deliveries
                          (id, farmer_id, buyer_id, lot_id, delivery_date, delivery_time,
                           variety, quantity_kg, grade, price_per_kg, total_amount,
                           pickup_location, delivery_location, farmer_contact, buyer_contact,
                           delivery_method, status, payment_status, payment_method, notes,
                           confirmed_at)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, %s,
                           %s, %s, %s, %s, %s,
                           %s, %s, %s, %s,
                           %s, 'In Transit', 'Unpaid', %s, %s,
                           now())
                        RETURNING *
                        """,
                        (
                            farmer_id,
                            buyer_id,
                            lot_id,
                            data.delivery_date,
                            data.delivery_time,
                            lot["variety"],
                            quantity,
                            lot["grade"],
                            price,
                            total,
                            _clean(data.pickup_location) or lot.get("location"),
                            data.delivery_location,
                            data.farmer_contact,
                            _clean(data.buyer_contact) or buyer.get("contact_number"),
                            data.delivery_method,
                            data.payment_method,
                            _clean(data.notes),
                        ),
                    )
                except pg_errors.UniqueViolation as exc:
                    raise LotAlreadyClaimed("inventory lot is already committed to an active delivery") from exc
                delivery = cur.fetchone()
                mark_claimed(cur, lot_id, delivery["id"])
                write_audit(
                    cur,
                    actor,
                    "delivery_created",
                    "fiber_delivery",
                    delivery["id"],
                    {"lot_id": lot_id, "buyer_id": buyer_id, "quantity_kg": quantity, "total_amount": total},
                )
    except (LotNotFound, LotAlreadyClaimed, InsufficientQuantity) as exc:
        json_log("warning", "delivery.claim_rejected", lot_id=lot_id, farmer_id=farmer_id, kind=exc.kind, detail=exc.detail)
        raise

    json_log("info", "delivery.created", delivery_id=delivery["id"], lot_id=lot_id, farmer_id=farmer_id, buyer_id=buyer_id)
    return delivery


def update_delivery(conn, actor: dict, delivery_id: str, data: DeliveryUpdateIn) -> dict:
    delivery_id = parse_uuid(delivery_id, "delivery_id")
    patch = data.model_dump(exclude_none=True)
    if not patch:
        raise ValidationError("no fields to update")

    with conn.transaction():
        with conn.cursor() as cur:
            doc = _lock_delivery(cur, delivery_id)
            _assert_owner_or_staff(actor, doc)
            assert_delivery_editable(doc["status"], "edit")

            if "quantity_kg" in patch:
                patch["quantity_kg"] = q_kg(patch["quantity_kg"])
                check_quantity_fits(lock_lot(cur, str(doc["lot_id"])), patch["quantity_kg"])
            if "price_per_kg" in patch:
                patch["price_per_kg"] = q_money(patch["price_per_kg"])
            if "quantity_kg" in patch or "price_per_kg" in patch:
                patch["total_amount"] = line_total(
                    patch.get("quantity_kg", doc["quantity_kg"]),
                    patch.get("price_per_kg", doc["price_per_kg"]),
                )

            sets = []
            params = []
            for k in _UPDATABLE_FIELDS + ["total_amount"]:
                if k in patch:
                    val = patch[k]
                    if k in _TEXT_FIELDS:
                        val = _clean(val)
                    sets.append(f"{k}=%s")
                    params.append(val)
            params.append(delivery_id)
            cur.execute(
                f"""
                UPDATE fiber_deliveries
                SET {', '.join(sets)}, updated_at=now()
                WHERE id=%s
                RETURNING *
                """,
                params,
            )
            updated = cur.fetchone()
            write_audit(cur, actor, "delivery_updated", "fiber_delivery", delivery_id, {"updated": sorted(patch.keys())})
    return updated


def delete_delivery(conn, actor: dict, delivery_id: str) -> dict:
    delivery_id = parse_uuid(delivery_id, "delivery_id")
    with conn.transaction():
        with conn.cursor() as cur:
            doc = _lock_delivery(cur, delivery_id)
            _assert_owner_or_staff(actor, doc)
            assert_delivery_editable(doc["status"], "delete")
            # Lock order on modify paths: delivery row, then its lot.
            lock_lot(cur, str(doc["lot_id"]))
            release_lot(cur, doc["lot_id"], delivery_id)
            cur.execute("DELETE FROM fiber_deliveries WHERE id=%s", (delivery_id,))
            write_audit(cur, actor, "delivery_deleted", "fiber_delivery", delivery_id, {"lot_id": doc["lot_id"]})
    json_log("info", "delivery.deleted", delivery_id=delivery_id, lot_id=doc["lot_id"])
    return {"ok": True}


def cancel_delivery(conn, actor: dict, delivery_id: str, reason: Optional[str]) -> dict:
    """
    Cancel from `In Transit` or `Delivered` with a mandatory reason.

    The lot goes back to available stock in the same transaction, so it is
    never left claimed by a cancelled delivery.
    """
    reason = require_reason(reason, "cancellation_reason")
    delivery_id = parse_uuid(delivery_id, "delivery_id")
    with conn.transaction():
        with conn.cursor() as cur:
            doc = _lock_delivery(cur, delivery_id)
            _assert_owner_or_staff(actor, doc)
            assert_delivery_transition(doc["status"], DELIVERY_CANCELLED)
            lock_lot(cur, str(doc["lot_id"]))
            cur.execute(
                """
                UPDATE fiber_deliveries
                SET status='Cancelled', cancellation_reason=%s, cancelled_at=now(), updated_at=now()
                WHERE id=%s
                RETURNING *
                """,
                (reason, delivery_id),
            )
            updated = cur.fetchone()
            released = release_lot(cur, doc["lot_id"], delivery_id)
            write_audit(
                cur,
                actor,
                "delivery_cancelled",
                "fiber_delivery",
                delivery_id,
                {"from": doc["status"], "reason": reason, "lot_released": released},
            )
    json_log("info", "delivery.cancelled", delivery_id=delivery_id, from_status=doc["status"], lot_released=released)
    return updated


def advance_delivery(conn, actor: dict, delivery_id: str, status: str, notes: Optional[str] = None) -> dict:
    """Cooperative-side status moves: Delivered, then Completed (which settles payment)."""
    if not is_staff(actor):
        raise PermissionDenied("only cooperative staff can advance delivery status")
    if status == DELIVERY_CANCELLED:
        raise ValidationError("use the cancel operation (a cancellation_reason is required)")
    delivery_id = parse_uuid(delivery_id, "delivery_id")
    with conn.transaction():
        with conn.cursor() as cur:
            doc = _lock_delivery(cur, delivery_id)
            assert_delivery_transition(doc["status"], status)
            sets = ["status=%s", "updated_at=now()"]
            params: list = [status]
            if status == DELIVERY_DELIVERED:
                sets.append("delivered_at=now()")
            elif status == DELIVERY_COMPLETED:
                sets.extend(["completed_at=now()", "payment_status='Paid'", "payment_date=COALESCE(payment_date, CURRENT_DATE)"])
            if _clean(notes):
                sets.append("notes=%s")
                params.append(_clean(notes))
            params.append(delivery_id)
            cur.execute(
                f"""
                UPDATE fiber_deliveries
                SET {', '.join(sets)}
                WHERE id=%s
                RETURNING *
                """,
                params,
            )
            updated = cur.fetchone()
            write_audit(cur, actor, "delivery_status_changed", "fiber_delivery", delivery_id, {"from": doc["status"], "to": status})
    json_log("info", "delivery.status_changed", delivery_id=delivery_id, from_status=doc["status"], to_status=status)
    return updated


def update_payment(conn, actor: dict, delivery_id: str, data: DeliveryPaymentIn) -> dict:
    delivery_id = parse_uuid(delivery_id, "delivery_id")
    with conn.transaction():
        with conn.cursor() as cur:
            doc = _lock_delivery(cur, delivery_id)
            if not is_staff(actor) and not (actor["role"] == "buyer" and str(doc["buyer_id"]) == actor["actor_id"]):
                raise PermissionDenied("only the buyer or cooperative staff can record payments")
            if doc["status"] == DELIVERY_CANCELLED:
                raise InvalidTransition("cannot record payment on a cancelled delivery")
            if doc["status"] == DELIVERY_COMPLETED and data.payment_status != "Paid":
                raise InvalidTransition("a completed delivery stays paid")
            payment_date = data.payment_date
            if data.payment_status == "Paid" and payment_date is None:
                payment_date = date.today()
            cur.execute(
                """
                UPDATE fiber_deliveries
                SET payment_status=%s,
                    payment_method=COALESCE(%s, payment_method),
                    payment_date=COALESCE(%s, payment_date),
                    updated_at=now()
                WHERE id=%s
                RETURNING *
                """,
                (data.payment_status, data.payment_method, payment_date, delivery_id),
            )
            updated = cur.fetchone()
            write_audit(
                cur,
                actor,
                "delivery_payment_updated",
                "fiber_delivery",
                delivery_id,
                {"from": doc["payment_status"], "to": data.payment_status},
            )
    return updated


DELIVERY_LIST_COLUMNS = """
    d.*, b.business_name AS buyer_name, f.full_name AS farmer_name
"""


def list_deliveries(
    conn,
    actor: dict,
    *,
    farmer_id: Optional[str] = None,
    buyer_id: Optional[str] = None,
    status: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = 200,
) -> list:
    if actor["role"] == "farmer":
        farmer_id = actor["actor_id"]
    elif actor["role"] == "buyer":
        buyer_id = actor["actor_id"]
    else:
        farmer_id = parse_uuid_optional(farmer_id, "farmer_id")
        buyer_id = parse_uuid_optional(buyer_id, "buyer_id")
    if status:
        status = parse_delivery_status(status)

    sql = f"""
        SELECT {DELIVERY_LIST_COLUMNS}
        FROM fiber_deliveries d
        JOIN buyers b ON b.id = d.buyer_id
        JOIN farmers f ON f.id = d.farmer_id
        WHERE 1=1
    """
    params: list = []
    if farmer_id:
        sql += " AND d.farmer_id=%s"
        params.append(farmer_id)
    if buyer_id:
        sql += " AND d.buyer_id=%s"
        params.append(buyer_id)
    if status:
        sql += " AND d.status=%s"
        params.append(status)
    if start_date:
        sql += " AND d.delivery_date >= %s"
        params.append(start_date)
    if end_date:
        sql += " AND d.delivery_date <= %s"
        params.append(end_date)
    sql += " ORDER BY d.created_at DESC LIMIT %s"
    params.append(limit)
    with conn.cursor() as cur:
        cur.execute(sql, params)
        return cur.fetchall()


def get_delivery(conn, actor: dict, delivery_id: str) -> dict:
    delivery_id = parse_uuid(delivery_id, "delivery_id")
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {DELIVERY_LIST_COLUMNS},
                   b.contact_number AS buyer_contact_number, b.business_address AS buyer_address,
                   f.contact_number AS farmer_contact_number
            FROM fiber_deliveries d
            JOIN buyers b ON b.id = d.buyer_id
            JOIN farmers f ON f.id = d.farmer_id
            WHERE d.id=%s
            """,
            (delivery_id,),
        )
        row = cur.fetchone()
    if not row:
        raise NotFound("delivery not found")
    _assert_party(actor, row)
    return row
