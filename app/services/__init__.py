"""Services package."""

from app.services.encryption_service import EncryptionService
from app.services.token_provider import TokenProvider, Credential
from app.services.rate_limiter import RateLimiter, SyncCheckpoint
from app.services.attendance_service import AttendanceService
from app.services.attendance_sync import AttendanceSyncEngine
from app.services.employee_sync import EmployeeSyncEngine
from app.services.name_matching import NameMatcher
from app.services.sync_service import SyncService

__all__ = [
    "EncryptionService",
    "TokenProvider",
    "Credential",
    "RateLimiter",
    "SyncCheckpoint",
    "AttendanceService",
    "AttendanceSyncEngine",
    "EmployeeSyncEngine",
    "NameMatcher",
    "SyncService",
]
