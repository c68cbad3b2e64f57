"""
Single-claim allocation of fiber inventory lots to deliveries.

The read/verify/claim sequence runs on a row locked with `FOR UPDATE`, inside
the caller's transaction, so two delivery requests for the same lot are
serialized by the database: the second one re-reads the lot after the first
commits and sees it claimed. The `UPDATE ... WHERE status='available'` in
`mark_claimed` is a compare-and-set on top of the lock, and the partial unique
index on `fiber_deliveries(lot_id)` backs both.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from .amounts import to_decimal
from .errors import InsufficientQuantity, LotAlreadyClaimed, LotNotFound

LOT_AVAILABLE = "available"
LOT_CLAIMED = "claimed"


def lock_lot(cur, lot_id: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, farmer_id, variety, grade, quantity_kg, harvest_date, location,
               status, claimed_by_delivery_id
        FROM inventory_lots
        WHERE id=%s
        FOR UPDATE
        """,
        (lot_id,),
    )
    return cur.fetchone()


def check_claimable(lot: Optional[dict], quantity: Decimal) -> None:
    if not lot:
        raise LotNotFound("inventory lot not found")
    if lot.get("status") != LOT_AVAILABLE or lot.get("claimed_by_delivery_id"):
        raise LotAlreadyClaimed("inventory lot is already committed to an active delivery")
    on_hand = to_decimal(lot.get("quantity_kg"))
    if to_decimal(quantity) > on_hand:
        raise InsufficientQuantity(f"requested {quantity} kg but the lot holds {on_hand} kg")


def claim_lot(cur, lot_id: str, quantity: Decimal) -> dict:
    """Lock the lot and verify it can back a new delivery of `quantity` kg."""
    lot = lock_lot(cur, lot_id)
    check_claimable(lot, quantity)
    return lot


def check_quantity_fits(lot: Optional[dict], quantity: Decimal) -> None:
    # Re-check on edit: the lot is already ours, only the size matters.
    if not lot:
        raise LotNotFound("inventory lot not found")
    on_hand = to_decimal(lot.get("quantity_kg"))
    if to_decimal(quantity) > on_hand:
        raise InsufficientQuantity(f"requested {quantity} kg but the lot holds {on_hand} kg")


def mark_claimed(cur, lot_id: str, delivery_id) -> None:
    cur.execute(
        """
        UPDATE inventory_lots
        SET status='claimed', claimed_by_delivery_id=%s, updated_at=now()
        WHERE id=%s AND status='available'
        """,
        (delivery_id, lot_id),
    )
    if cur.rowcount != 1:
        raise LotAlreadyClaimed("inventory lot is already committed to an active delivery")


def release_lot(cur, lot_id, delivery_id) -> bool:
    """Return the lot to available stock if (and only if) this delivery holds it."""
    cur.execute(
        """
        UPDATE inventory_lots
        SET status='available', claimed_by_delivery_id=NULL, updated_at=now()
        WHERE id=%s AND claimed_by_delivery_id=%s
        """,
        (lot_id, delivery_id),
    )
    return cur.rowcount == 1
