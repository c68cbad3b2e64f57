from fastapi import APIRouter, Depends, Query
from typing import Optional

from ..db import get_db
from ..deps import get_actor, require_role
from ..errors import NotFound, PermissionDenied
from ..validation import parse_uuid, parse_uuid_optional

router = APIRouter(prefix="/inventory/lots", tags=["inventory"])

_LOT_COLUMNS = """
    l.id, l.farmer_id, f.full_name AS farmer_name, l.variety, l.grade, l.quantity_kg,
    l.harvest_date, l.location, l.status, l.claimed_by_delivery_id, l.created_at, l.updated_at
"""


@router.get("", dependencies=[Depends(require_role("farmer", "reviewer", "association"))])
def list_lots(
    farmer_id: Optional[str] = Query(None),
    available_only: bool = Query(False, description="only lots that can back a new delivery"),
    limit: int = Query(200, ge=1, le=1000),
    conn=Depends(get_db),
    actor=Depends(get_actor),
):
    if actor["role"] == "farmer":
        farmer_id = actor["actor_id"]
    else:
        farmer_id = parse_uuid_optional(farmer_id, "farmer_id")

    sql = f"""
        SELECT {_LOT_COLUMNS}
        FROM inventory_lots l
        JOIN farmers f ON f.id = l.farmer_id
        WHERE 1=1
    """
    params: list = []
    if farmer_id:
        sql += " AND l.farmer_id=%s"
        params.append(farmer_id)
    if available_only:
        sql += " AND l.status='available'"
    sql += " ORDER BY l.harvest_date DESC NULLS LAST, l.created_at DESC LIMIT %s"
    params.append(limit)
    with conn.cursor() as cur:
        cur.execute(sql, params)
        return {"lots": cur.fetchall()}


@router.get("/{lot_id}", dependencies=[Depends(require_role("farmer", "reviewer", "association"))])
def get_lot(lot_id: str, conn=Depends(get_db), actor=Depends(get_actor)):
    lot_id = parse_uuid(lot_id, "lot_id")
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {_LOT_COLUMNS}
            FROM inventory_lots l
            JOIN farmers f ON f.id = l.farmer_id
            WHERE l.id=%s
            """,
            (lot_id,),
        )
        lot = cur.fetchone()
    if not lot:
        raise NotFound("inventory lot not found")
    if actor["role"] == "farmer" and str(lot["farmer_id"]) != actor["actor_id"]:
        raise PermissionDenied("access denied")
    return {"lot": lot}
