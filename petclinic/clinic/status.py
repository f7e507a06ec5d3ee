"""Appointment status translation between the stored and displayed vocabularies."""

from __future__ import annotations

from types import MappingProxyType

# Display label -> persisted label. Several display labels share a persisted
# value, so the reverse lookup is lossy.
STATUS_MAP_TO_BACKEND = MappingProxyType(
    {
        "Completed": "Hoàn thành",
        "Pending": "Đang chờ xác nhận",
        "Scheduled": "Đang chờ xác nhận",
        "Confirmed": "Đã xác nhận",
        "In Progress": "Đang xử lý",
        "Cancelled": "Hủy bỏ",
        "Checked-in": "Đã xác nhận",
        "checked-in": "Đã xác nhận",
    }
)

STATUS_MAP_TO_FRONTEND = MappingProxyType(
    {
        "Hoàn thành": "Completed",
        "Đang chờ xác nhận": "Pending",
        "Đã xác nhận": "Confirmed",
        "Đang xử lý": "In Progress",
        "Hủy bỏ": "Cancelled",
    }
)

BACKEND_STATUSES = frozenset(STATUS_MAP_TO_FRONTEND)
DEFAULT_BACKEND_STATUS = "Đang chờ xác nhận"


def to_backend_status(frontend_status: str) -> str:
    """Return the persisted label for ``frontend_status``.

    Unknown labels are returned unchanged.
    """

    return STATUS_MAP_TO_BACKEND.get(frontend_status) or frontend_status


def to_frontend_status(backend_status: str) -> str:
    """Return the display label for ``backend_status``, or the input if unmapped."""

    return STATUS_MAP_TO_FRONTEND.get(backend_status) or backend_status


__all__ = [
    "BACKEND_STATUSES",
    "DEFAULT_BACKEND_STATUS",
    "STATUS_MAP_TO_BACKEND",
    "STATUS_MAP_TO_FRONTEND",
    "to_backend_status",
    "to_frontend_status",
]
