from fastapi import APIRouter, Depends, Query
from datetime import date
from typing import Optional

from ..analytics import delivery_stats
from ..db import get_db
from ..deliveries import (
    advance_delivery,
    cancel_delivery,
    create_delivery,
    delete_delivery,
    get_delivery,
    list_deliveries,
    update_delivery,
    update_payment,
)
from ..deps import get_actor, require_role
from ..errors import ValidationError
from ..schemas import DeliveryCancelIn, DeliveryCreateIn, DeliveryPaymentIn, DeliveryStatusIn, DeliveryUpdateIn
from ..workflow import DELIVERY_CANCELLED

router = APIRouter(prefix="/deliveries", tags=["deliveries"])

_WRITERS = ("farmer", "reviewer", "association")
_STAFF = ("reviewer", "association")


@router.post("", dependencies=[Depends(require_role(*_WRITERS))])
def create(data: DeliveryCreateIn, conn=Depends(get_db), actor=Depends(get_actor)):
    return {"delivery": create_delivery(conn, actor, data)}


@router.get("", dependencies=[Depends(require_role("farmer", "buyer", "reviewer", "association"))])
def list_all(
    status: str = Query("", description="In Transit|Delivered|Completed|Cancelled|all"),
    farmer_id: Optional[str] = Query(None),
    buyer_id: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    conn=Depends(get_db),
    actor=Depends(get_actor),
):
    st = (status or "").strip()
    if st.lower() == "all":
        st = ""
    deliveries = list_deliveries(
        conn,
        actor,
        farmer_id=farmer_id,
        buyer_id=buyer_id,
        status=st or None,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
    )
    return {"deliveries": deliveries}


@router.get("/stats", dependencies=[Depends(require_role("farmer", "reviewer", "association"))])
def stats(farmer_id: Optional[str] = Query(None), conn=Depends(get_db), actor=Depends(get_actor)):
    if actor["role"] == "farmer":
        farmer_id = actor["actor_id"]
    elif not farmer_id:
        raise ValidationError("farmer_id is required")
    return {"stats": delivery_stats(conn, farmer_id)}


@router.get("/{delivery_id}", dependencies=[Depends(require_role("farmer", "buyer", "reviewer", "association"))])
def get_one(delivery_id: str, conn=Depends(get_db), actor=Depends(get_actor)):
    return {"delivery": get_delivery(conn, actor, delivery_id)}


@router.patch("/{delivery_id}", dependencies=[Depends(require_role(*_WRITERS))])
def update(delivery_id: str, data: DeliveryUpdateIn, conn=Depends(get_db), actor=Depends(get_actor)):
    return {"delivery": update_delivery(conn, actor, delivery_id, data)}


@router.delete("/{delivery_id}", dependencies=[Depends(require_role(*_WRITERS))])
def delete(delivery_id: str, conn=Depends(get_db), actor=Depends(get_actor)):
    return delete_delivery(conn, actor, delivery_id)


@router.post("/{delivery_id}/cancel", dependencies=[Depends(require_role(*_WRITERS))])
def cancel(delivery_id: str, data: DeliveryCancelIn, conn=Depends(get_db), actor=Depends(get_actor)):
    return {"delivery": cancel_delivery(conn, actor, delivery_id, data.cancellation_reason)}


@router.put("/{delivery_id}/status", dependencies=[Depends(require_role(*_STAFF))])
def change_status(delivery_id: str, data: DeliveryStatusIn, conn=Depends(get_db), actor=Depends(get_actor)):
    if data.status == DELIVERY_CANCELLED:
        return {"delivery": cancel_delivery(conn, actor, delivery_id, data.cancellation_reason)}
    return {"delivery": advance_delivery(conn, actor, delivery_id, data.status, data.notes)}


@router.put("/{delivery_id}/payment", dependencies=[Depends(require_role("buyer", *_STAFF))])
def payment(delivery_id: str, data: DeliveryPaymentIn, conn=Depends(get_db), actor=Depends(get_actor)):
    return {"delivery": update_payment(conn, actor, delivery_id, data)}
