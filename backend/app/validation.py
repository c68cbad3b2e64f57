from __future__ import annotations

import uuid
from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _to_title_str(v):
    if v is None:
        return v
    return " ".join(str(v).split()).title()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


# Canonical codes mirror the CHECK constraints in `backend/db/migrations/001_init.sql`.
ReportStatus = Annotated[Literal["pending", "approved", "rejected"], BeforeValidator(_to_lower_str)]
DeliveryStatus = Annotated[
    Literal["In Transit", "Delivered", "Completed", "Cancelled"],
    BeforeValidator(_to_title_str),
]
PaymentStatus = Annotated[Literal["Unpaid", "Partial", "Paid"], BeforeValidator(_to_title_str)]


# Abaca grade codes (EF, S2, S3, I, G, H, JK, M1, T1...). Free list, tight charset.
FiberGrade = Annotated[
    str,
    BeforeValidator(_to_upper_str),
    StringConstraints(min_length=1, max_length=16, pattern=r"^[A-Z0-9][A-Z0-9-]*$"),
]


# Keep a tight, safe character set so methods are stable identifiers.
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]


# Calendar year-month, e.g. 2024-03.
ReportPeriod = Annotated[
    str,
    BeforeValidator(_strip_str),
    StringConstraints(pattern=r"^\d{4}-(0[1-9]|1[0-2])$"),
]


NonBlankText = Annotated[str, BeforeValidator(_strip_str), StringConstraints(min_length=1, max_length=2000)]


def parse_uuid(value, label: str) -> str:
    raw = str(value or "").strip()
    if not raw:
        raise ValidationError(f"{label} is required")
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        raise ValidationError(f"{label} must be a valid UUID")


def parse_uuid_optional(value, label: str):
    if value is None or not str(value).strip():
        return None
    return parse_uuid(value, label)


_REPORT_STATUS = TypeAdapter(ReportStatus)
_DELIVERY_STATUS = TypeAdapter(DeliveryStatus)


def parse_report_status(value) -> str:
    try:
        return _REPORT_STATUS.validate_python(value)
    except PydanticValidationError:
        raise ValidationError("invalid status")


def parse_delivery_status(value) -> str:
    try:
        return _DELIVERY_STATUS.validate_python(value)
    except PydanticValidationError:
        raise ValidationError("invalid status")
