"""
Validated request bodies.

Unknown fields are rejected (`extra="forbid"`) and required fields are checked
before any store access. Decision-style inputs are tagged unions keyed on
`decision` / `status`, so a rejection without a reason or a cancellation
without a reason never reaches the workflow.
"""
from datetime import date, time
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .validation import FiberGrade, NonBlankText, PaymentMethod, PaymentStatus, ReportPeriod


class _StrictIn(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SalesTransactionIn(_StrictIn):
    buyer_name: Annotated[NonBlankText, Field(max_length=200)]
    fiber_grade: FiberGrade
    quantity_kg: Decimal = Field(gt=0)
    price_per_kg: Decimal = Field(ge=0)
    total_amount: Decimal = Field(ge=0)
    sale_date: date
    payment_method: Optional[PaymentMethod] = None


class SalesReportIn(_StrictIn):
    farmer_id: str
    report_month: ReportPeriod
    transactions: List[SalesTransactionIn] = Field(min_length=1)
    notes: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=64)


class ApproveReportIn(_StrictIn):
    decision: Literal["approved"]


class RejectReportIn(_StrictIn):
    decision: Literal["rejected"]
    rejection_reason: NonBlankText


ReportReviewIn = Annotated[Union[ApproveReportIn, RejectReportIn], Field(discriminator="decision")]


class DeliveryCreateIn(_StrictIn):
    # Farmers may omit farmer_id (it is their own); staff must say whom they act for.
    farmer_id: Optional[str] = None
    lot_id: str
    buyer_id: str
    quantity_kg: Decimal = Field(gt=0)
    # Unpriced until the buyer confirms; editable while In Transit.
    price_per_kg: Decimal = Field(default=Decimal("0"), ge=0)
    delivery_date: date
    delivery_time: Optional[time] = None
    delivery_method: Annotated[NonBlankText, Field(max_length=50)]
    pickup_location: Optional[str] = None
    delivery_location: NonBlankText
    farmer_contact: Annotated[NonBlankText, Field(max_length=50)]
    buyer_contact: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None


class DeliveryUpdateIn(_StrictIn):
    delivery_date: Optional[date] = None
    delivery_time: Optional[time] = None
    quantity_kg: Optional[Decimal] = Field(default=None, gt=0)
    price_per_kg: Optional[Decimal] = Field(default=None, ge=0)
    delivery_method: Optional[Annotated[NonBlankText, Field(max_length=50)]] = None
    pickup_location: Optional[str] = None
    delivery_location: Optional[NonBlankText] = None
    farmer_contact: Optional[Annotated[NonBlankText, Field(max_length=50)]] = None
    buyer_contact: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None


class DeliveryCancelIn(_StrictIn):
    cancellation_reason: NonBlankText


class MarkDeliveredIn(_StrictIn):
    status: Literal["Delivered"]
    notes: Optional[str] = None


class MarkCompletedIn(_StrictIn):
    status: Literal["Completed"]
    notes: Optional[str] = None


class CancelByStatusIn(_StrictIn):
    status: Literal["Cancelled"]
    cancellation_reason: NonBlankText


DeliveryStatusIn = Annotated[
    Union[MarkDeliveredIn, MarkCompletedIn, CancelByStatusIn],
    Field(discriminator="status"),
]


class DeliveryPaymentIn(_StrictIn):
    payment_status: PaymentStatus
    payment_method: Optional[PaymentMethod] = None
    payment_date: Optional[date] = None
