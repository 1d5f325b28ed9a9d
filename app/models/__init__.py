"""Database models package."""

from app.models.employee import Employee
from app.models.attendance import AttendanceRecord
from app.models.sync_record import SyncRecord

__all__ = [
    "Employee",
    "AttendanceRecord",
    "SyncRecord",
]
