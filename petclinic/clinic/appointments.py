"""Normalisation of loosely shaped appointment requests."""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass
from typing import Any, Mapping

from .errors import DateTimeError

OK = "ok"
INCOMPLETE = "incomplete"
INVALID = "invalid"


@dataclass(frozen=True)
class AppointmentPayload:
    """Validated body for the appointment creation endpoint.

    Only :func:`normalize_appointment_payload` builds these.
    """

    customer_id: int
    pet_id: int
    branch_id: int
    doctor_id: int
    appointment_time: str

    def as_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "pet_id": self.pet_id,
            "branch_id": self.branch_id,
            "doctor_id": self.doctor_id,
            "appointment_time": self.appointment_time,
        }


@dataclass(frozen=True)
class NormalizationResult:
    status: str
    payload: AppointmentPayload | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == OK


def to_numeric_id(value: Any) -> int | None:
    """Coerce an identifier given as a number or numeric string.

    Returns ``None`` for anything that is not a finite whole number.
    """

    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    elif isinstance(value, (int, float)):
        number = value
    else:
        return None
    if not math.isfinite(number) or number != int(number):
        return None
    return int(number)


def combine_date_time(date: str, time: str) -> str:
    """Combine a local ``YYYY-MM-DD`` date and ``HH:MM`` time into a UTC instant.

    The result looks like ``2025-01-10T02:30:00.000Z``. Empty or unparseable
    input raises :class:`DateTimeError`.
    """

    if not date or not time:
        raise DateTimeError("Date and time are required")
    try:
        local = dt.datetime.fromisoformat(f"{date}T{time}:00")
    except ValueError as exc:
        raise DateTimeError(f"Invalid appointment date/time: {date} {time}") from exc
    instant = local.astimezone(dt.timezone.utc)
    return instant.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _extract_appointment_time(data: Mapping[str, Any]) -> str | None:
    if data.get("appointment_time"):
        return data["appointment_time"]
    if data.get("appointmentDate") and data.get("appointmentTime"):
        return combine_date_time(data["appointmentDate"], data["appointmentTime"])
    if data.get("date") and data.get("time"):
        return combine_date_time(data["date"], data["time"])
    return None


def normalize_appointment_payload(data: Mapping[str, Any]) -> AppointmentPayload | None:
    """Collapse a raw booking request into an :class:`AppointmentPayload`.

    Identifiers may be given in camelCase or snake_case (the doctor also as
    ``veterinarianId``), as numbers or numeric strings. The instant is taken
    from ``appointment_time`` verbatim, else from ``appointmentDate`` and
    ``appointmentTime``, else from ``date`` and ``time``.

    Returns ``None`` when a required field is missing; an identifier of ``0``
    counts as missing. A date/time pair that cannot be combined raises
    :class:`DateTimeError`.
    """

    customer_id = to_numeric_id(data.get("customerId") or data.get("customer_id"))
    pet_id = to_numeric_id(data.get("petId") or data.get("pet_id"))
    branch_id = to_numeric_id(data.get("branchId") or data.get("branch_id"))
    doctor_id = to_numeric_id(
        data.get("doctorId") or data.get("doctor_id") or data.get("veterinarianId")
    )

    appointment_time = _extract_appointment_time(data)
    if appointment_time is None:
        return None

    if not (customer_id and pet_id and branch_id and doctor_id and appointment_time):
        return None

    return AppointmentPayload(
        customer_id=customer_id,
        pet_id=pet_id,
        branch_id=branch_id,
        doctor_id=doctor_id,
        appointment_time=appointment_time,
    )


def evaluate_appointment_payload(data: Mapping[str, Any]) -> NormalizationResult:
    """Like :func:`normalize_appointment_payload` but never raises."""

    try:
        payload = normalize_appointment_payload(data)
    except DateTimeError as exc:
        return NormalizationResult(status=INVALID, reason=str(exc))
    if payload is None:
        return NormalizationResult(status=INCOMPLETE)
    return NormalizationResult(status=OK, payload=payload)


__all__ = [
    "INCOMPLETE",
    "INVALID",
    "OK",
    "AppointmentPayload",
    "NormalizationResult",
    "combine_date_time",
    "evaluate_appointment_payload",
    "normalize_appointment_payload",
    "to_numeric_id",
]
