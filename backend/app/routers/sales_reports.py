from fastapi import APIRouter, Depends, Query
from typing import Optional

from ..analytics import farmers_performance, get_analytics
from ..db import get_db
from ..deps import get_actor, require_role
from ..errors import PermissionDenied
from ..report_aggregator import get_sales_report, list_sales_reports, resolve_period_filter, submit_sales_report
from ..schemas import ReportReviewIn, SalesReportIn
from ..validation import parse_uuid_optional
from ..workflow import review_sales_report

router = APIRouter(prefix="/sales", tags=["sales"])


@router.post("/reports", dependencies=[Depends(require_role("farmer", "reviewer"))])
def submit_report(data: SalesReportIn, conn=Depends(get_db), actor=Depends(get_actor)):
    return submit_sales_report(conn, actor, data)


@router.get("/reports", dependencies=[Depends(require_role("farmer", "reviewer", "association"))])
def list_reports(
    status: str = Query("", description="pending|approved|rejected"),
    period: str = Query("", description="YYYY-MM, current_month or last_month"),
    farmer_id: Optional[str] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    conn=Depends(get_db),
    actor=Depends(get_actor),
):
    if actor["role"] == "farmer":
        farmer_id = actor["actor_id"]
    else:
        farmer_id = parse_uuid_optional(farmer_id, "farmer_id")
    reports = list_sales_reports(
        conn,
        status=(status or "").strip() or None,
        period=resolve_period_filter(period),
        farmer_id=farmer_id,
        limit=limit,
    )
    return {"reports": reports}


@router.get("/reports/{report_id}", dependencies=[Depends(require_role("farmer", "reviewer", "association"))])
def get_report(report_id: str, conn=Depends(get_db), actor=Depends(get_actor)):
    out = get_sales_report(conn, report_id)
    if actor["role"] == "farmer" and str(out["report"]["farmer_id"]) != actor["actor_id"]:
        raise PermissionDenied("access denied")
    return out


@router.put("/reports/{report_id}/status", dependencies=[Depends(require_role("reviewer"))])
def review_report(report_id: str, data: ReportReviewIn, conn=Depends(get_db), actor=Depends(get_actor)):
    updated = review_sales_report(
        conn,
        report_id,
        actor,
        data.decision,
        getattr(data, "rejection_reason", None),
    )
    return {"report": updated}


@router.get("/analytics", dependencies=[Depends(require_role("reviewer", "association"))])
def analytics(
    period: str = Query("", description="YYYY-MM, current_month or last_month"),
    conn=Depends(get_db),
):
    return {"analytics": get_analytics(conn, resolve_period_filter(period))}


@router.get("/farmers-performance", dependencies=[Depends(require_role("reviewer", "association"))])
def farmers_performance_report(
    period: str = Query("", description="YYYY-MM, current_month or last_month"),
    conn=Depends(get_db),
):
    return {"farmers": farmers_performance(conn, resolve_period_filter(period))}
