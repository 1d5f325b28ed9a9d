"""Sync service for orchestrating attendance and employee sync runs."""

import logging
from datetime import datetime
from typing import Optional, List, Dict, Any
from sqlalchemy.orm import Session
import asyncio

from app.database.cache import CacheBackend
from app.models.sync_record import SyncRecord
from app.services.attendance_sync import AttendanceSyncEngine, EMPLOYEE_IDS_CACHE_KEY
from app.services.employee_sync import EmployeeSyncEngine, PARTIAL_ROSTER_KEY
from app.services.token_provider import TokenProvider

logger = logging.getLogger(__name__)

ATTENDANCE = "attendance"
EMPLOYEE = "employee"
SYNC_TYPES = (ATTENDANCE, EMPLOYEE)


class SyncService:
    """Runs the sync engines and records every run as a SyncRecord.

    At most one run per sync type is active at a time; the attendance and
    employee engines may run concurrently since their checkpoints are
    disjoint.
    """

    # Class-level locks so every service instance sees the same active runs
    _sync_locks: Dict[str, asyncio.Lock] = {sync_type: asyncio.Lock() for sync_type in SYNC_TYPES}
    _current_sync_ids: Dict[str, Optional[int]] = {sync_type: None for sync_type in SYNC_TYPES}

    def __init__(
        self,
        cache: CacheBackend,
        token_provider: TokenProvider,
        attendance_engine: Optional[AttendanceSyncEngine] = None,
        employee_engine: Optional[EmployeeSyncEngine] = None
    ):
        """Initialize sync service.

        Args:
            cache: Durable cache backend.
            token_provider: Shared Keka token provider.
            attendance_engine: Attendance engine (defaults to a new one).
            employee_engine: Employee engine (defaults to a new one).
        """
        self.cache = cache
        self.token_provider = token_provider
        self.attendance_engine = attendance_engine or AttendanceSyncEngine(cache, token_provider)
        self.employee_engine = employee_engine or EmployeeSyncEngine(cache, token_provider)

    def _engine(self, sync_type: str):
        if sync_type == ATTENDANCE:
            return self.attendance_engine
        if sync_type == EMPLOYEE:
            return self.employee_engine
        raise ValueError(f"Unknown sync type: {sync_type}")

    async def run_attendance_sync(self, db: Session) -> SyncRecord:
        """Run one attendance sync pass.

        Returns:
            SyncRecord with the run outcome.

        Raises:
            RuntimeError: If an attendance sync is already in progress.
        """
        return await self._run(db, ATTENDANCE)

    async def run_employee_sync(self, db: Session) -> SyncRecord:
        """Run one employee roster sync.

        Returns:
            SyncRecord with the run outcome.

        Raises:
            RuntimeError: If an employee sync is already in progress.
        """
        return await self._run(db, EMPLOYEE)

    async def _run(self, db: Session, sync_type: str) -> SyncRecord:
        engine = self._engine(sync_type)
        lock = self._sync_locks[sync_type]

        # Check if sync is already in progress
        if lock.locked():
            logger.warning(f"{sync_type.capitalize()} sync already in progress")
            raise RuntimeError(f"A {sync_type} sync is already in progress")

        async with lock:
            sync_record = SyncRecord(
                sync_type=sync_type,
                status="in_progress",
                started_at=datetime.utcnow()
            )
            db.add(sync_record)
            db.commit()
            db.refresh(sync_record)

            self._current_sync_ids[sync_type] = sync_record.id
            logger.info(f"Starting {sync_type} sync operation {sync_record.id}")

            try:
                result = await engine.run(db)

                sync_record.status = "success"
                sync_record.completed_at = datetime.utcnow()
                sync_record.changes_summary = result.summary()
                db.commit()
                db.refresh(sync_record)

                logger.info(f"{sync_type.capitalize()} sync operation {sync_record.id} completed successfully")
                return sync_record

            except Exception as e:
                error_message = str(e) or e.__class__.__name__
                logger.error(f"{sync_type.capitalize()} sync operation {sync_record.id} failed: {error_message}")

                # The engine may have left the session mid-transaction
                db.rollback()
                sync_record.status = "failed"
                sync_record.completed_at = datetime.utcnow()
                sync_record.error_message = error_message
                db.commit()
                db.refresh(sync_record)

                return sync_record

            finally:
                self._current_sync_ids[sync_type] = None

    def get_active_sync(self, db: Session, sync_type: str) -> Optional[Dict[str, Any]]:
        """Get the in-progress run of a sync type.

        Returns:
            Dictionary with sync_id, status, started_at and duration_seconds,
            or None if no run is active.
        """
        sync_id = self._current_sync_ids.get(sync_type)
        if not sync_id:
            return None

        sync_record = self.get_sync_record(db, sync_id)
        if not sync_record:
            return None

        duration = (datetime.utcnow() - sync_record.started_at).total_seconds()
        return {
            "sync_id": sync_record.id,
            "status": sync_record.status,
            "started_at": sync_record.started_at.isoformat(),
            "duration_seconds": duration
        }

    async def get_sync_status(self, db: Session) -> Dict[str, Any]:
        """Get rate limiter state, active run and last run for each sync type."""
        status = {}
        for sync_type in SYNC_TYPES:
            engine = self._engine(sync_type)
            history = self.get_sync_history(db, sync_type=sync_type, limit=1)
            status[sync_type] = {
                "in_progress": self.is_sync_in_progress(sync_type),
                "active_sync": self.get_active_sync(db, sync_type),
                "rate_limit": await engine.rate_limiter.status(),
                "last_sync": history[0] if history else None
            }
        return status

    def get_sync_history(
        self,
        db: Session,
        sync_type: Optional[str] = None,
        limit: int = 10,
        offset: int = 0
    ) -> List[SyncRecord]:
        """Get history of past sync runs, most recent first.

        Args:
            db: Database session.
            sync_type: Optional filter ("attendance" or "employee").
            limit: Maximum number of records to return.
            offset: Number of records to skip.
        """
        query = db.query(SyncRecord)
        if sync_type:
            query = query.filter(SyncRecord.sync_type == sync_type)
        return query.order_by(
            SyncRecord.started_at.desc(),
            SyncRecord.id.desc()
        ).limit(limit).offset(offset).all()

    def get_sync_record(self, db: Session, sync_id: int) -> Optional[SyncRecord]:
        """Get a specific sync record by ID."""
        return db.query(SyncRecord).filter(SyncRecord.id == sync_id).first()

    async def reset_checkpoint(self, sync_type: str) -> None:
        """Discard the resume checkpoint of a sync type.

        The next run starts from the first employee (or page).

        Raises:
            ValueError: If the sync type is unknown.
            RuntimeError: If a run of that type is in progress.
        """
        engine = self._engine(sync_type)
        if self.is_sync_in_progress(sync_type):
            raise RuntimeError(f"Cannot reset {sync_type} checkpoint while a sync is in progress")

        await engine.rate_limiter.clear()
        if sync_type == EMPLOYEE:
            await self.cache.delete(PARTIAL_ROSTER_KEY)
        logger.info(f"{sync_type.capitalize()} checkpoint reset")

    async def clear_employee_ids_cache(self) -> None:
        """Drop the cached employee id list used by attendance sync."""
        await self.cache.delete(EMPLOYEE_IDS_CACHE_KEY)
        logger.info("Employee ID cache cleared")

    async def get_employees_data(self, db: Session) -> Dict[str, Any]:
        """Get the filtered Keka roster (see EmployeeSyncEngine.get_employees_data)."""
        return await self.employee_engine.get_employees_data(db)

    def is_sync_in_progress(self, sync_type: Optional[str] = None) -> bool:
        """Check if a sync run is in progress.

        Args:
            sync_type: Sync type to check; any type when omitted.
        """
        if sync_type:
            return self._sync_locks[sync_type].locked()
        return any(lock.locked() for lock in self._sync_locks.values())
