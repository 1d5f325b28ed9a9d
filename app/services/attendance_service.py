"""Attendance storage: off-day derivation, clock conversion and upserts."""

import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.config import settings
from app.models.attendance import AttendanceRecord
from app.models.employee import Employee
from app.services.exceptions import PersistenceError, ValidationError

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# Keka sends up to 7 fractional digits; datetime accepts at most 6
_FRACTION = re.compile(r"(\.\d{6})\d+")

# Fields copied from the remote record as-is, defaulting to 0 when null
NUMERIC_FIELDS = {
    "shift_duration": "shiftDuration",
    "total_gross_hours": "totalGrossHours",
    "total_break_duration": "totalBreakDuration",
    "total_effective_hours": "totalEffectiveHours",
    "total_effective_overtime_duration": "totalEffectiveOvertimeDuration",
}


class UpsertResult:
    """Per-page counts of what the upsert did."""

    def __init__(self):
        self.new_records = 0
        self.updated_records = 0
        self.unchanged_records = 0
        self.skipped_records = 0
        self.duplicate_records = 0

    def __repr__(self) -> str:
        return (
            f"<UpsertResult new={self.new_records} updated={self.updated_records} "
            f"unchanged={self.unchanged_records} skipped={self.skipped_records} "
            f"duplicates={self.duplicate_records}>"
        )


def convert_to_local(value: Optional[str], offset_minutes: int) -> Optional[datetime]:
    """Convert a UTC timestamp string to a naive local-clock datetime.

    Naive inputs are taken as UTC. Returns None for empty or unparseable
    values.
    """
    if not value:
        return None

    text = _FRACTION.sub(r"\1", value.strip()).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"Invalid UTC time string: {value}")
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)

    return (parsed + timedelta(minutes=offset_minutes)).replace(microsecond=0)


def parse_attendance_date(value: str) -> date:
    """Take the calendar date of a Keka attendanceDate ("2024-05-01T00:00:00Z")."""
    return date.fromisoformat(value.split("T")[0])


def is_offday(attendance_date: date, offdays: Optional[str]) -> bool:
    """Check whether a date falls on one of the employee's configured off-days.

    Args:
        attendance_date: Calendar date of the record.
        offdays: Comma separated weekday names, e.g. "Sunday, Saturday".
    """
    if not offdays:
        return False

    offday_list = {day.strip().lower() for day in offdays.split(",")}
    return WEEKDAY_NAMES[attendance_date.weekday()] in offday_list


class AttendanceService:
    """Service for reading employee attributes and upserting attendance."""

    def __init__(self, utc_offset_minutes: Optional[int] = None):
        """Initialize attendance service.

        Args:
            utc_offset_minutes: Local clock offset from UTC (defaults to settings).
        """
        self.utc_offset_minutes = (
            utc_offset_minutes if utc_offset_minutes is not None else settings.local_utc_offset_minutes
        )

    def get_employee_ids(self, db: Session) -> List[str]:
        """Get all assigned Keka employee ids in a stable order."""
        rows = db.query(Employee.employee_id).filter(
            Employee.employee_id.isnot(None),
            Employee.employee_id != ""
        ).order_by(Employee.id).all()
        return [row.employee_id for row in rows]

    def get_offdays(self, db: Session, employee_id: str) -> Optional[str]:
        """Get the configured off-days for an employee, or None."""
        try:
            row = db.query(Employee.offdays).filter(Employee.employee_id == employee_id).first()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error fetching offdays for employee {employee_id}: {e}")
            return None
        return row.offdays if row else None

    def has_record_for_date(self, db: Session, employee_id: str, day: date) -> bool:
        """Check whether an attendance row exists for the employee on a date."""
        return db.query(AttendanceRecord.row_id).filter(
            AttendanceRecord.employee_id == employee_id,
            AttendanceRecord.attendance_date == day
        ).first() is not None

    def build_row_values(
        self,
        raw: Dict[str, Any],
        employee_id: str,
        offdays: Optional[str]
    ) -> Dict[str, Any]:
        """Map a Keka attendance record to attendance column values.

        Raises:
            ValidationError: If the date or either shift time is missing or invalid.
        """
        raw_date = raw.get("attendanceDate")
        if not raw_date:
            raise ValidationError(f"Record {raw.get('id')} for employee {employee_id} has no attendanceDate")
        try:
            attendance_date = parse_attendance_date(raw_date)
        except ValueError as e:
            raise ValidationError(f"Record {raw.get('id')} has invalid attendanceDate {raw_date!r}") from e

        shift_start = convert_to_local(raw.get("shiftStartTime"), self.utc_offset_minutes)
        shift_end = convert_to_local(raw.get("shiftEndTime"), self.utc_offset_minutes)
        if not shift_start or not shift_end:
            raise ValidationError(
                f"Invalid shift times for employee {employee_id} on {attendance_date}"
            )

        first_in = (raw.get("firstInOfTheDay") or {}).get("timestamp")
        last_out = (raw.get("lastOutOfTheDay") or {}).get("timestamp")

        values = {
            "id": raw.get("id"),
            "attendance_date": attendance_date,
            "shift_start": shift_start,
            "shift_end": shift_end,
            "first_in_of_the_day_time": convert_to_local(first_in, self.utc_offset_minutes),
            "last_out_of_the_day_time": convert_to_local(last_out, self.utc_offset_minutes),
            "is_offday": is_offday(attendance_date, offdays),
        }
        for column, key in NUMERIC_FIELDS.items():
            values[column] = raw.get(key) or 0
        return values

    def upsert_record(
        self,
        db: Session,
        employee_id: str,
        raw: Dict[str, Any],
        offdays: Optional[str]
    ) -> str:
        """Insert or overwrite the row for (employee_id, attendance date).

        Remote values always win. Each record is committed on its own.

        Returns:
            "inserted", "updated" or "unchanged".

        Raises:
            ValidationError: If the record is malformed.
            IntegrityError: If a concurrent writer inserted the same key.
            PersistenceError: On any other store failure.
        """
        values = self.build_row_values(raw, employee_id, offdays)

        try:
            existing = db.query(AttendanceRecord).filter(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.attendance_date == values["attendance_date"]
            ).first()

            if existing:
                changed = False
                for column, value in values.items():
                    if getattr(existing, column) != value:
                        setattr(existing, column, value)
                        changed = True
                if not changed:
                    return "unchanged"
                db.commit()
                return "updated"

            db.add(AttendanceRecord(employee_id=employee_id, **values))
            db.commit()
            return "inserted"

        except IntegrityError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error saving attendance record for {employee_id}: {e}")
            raise PersistenceError(f"Failed to save attendance for {employee_id}: {e}") from e

    def upsert_records(
        self,
        db: Session,
        employee_id: str,
        records: List[Dict[str, Any]],
        offdays: Optional[str]
    ) -> UpsertResult:
        """Upsert one page of Keka attendance records.

        Malformed records and duplicate-key races are skipped; any other
        store failure propagates.

        Returns:
            UpsertResult with per-outcome counts.
        """
        result = UpsertResult()

        for raw in records:
            try:
                outcome = self.upsert_record(db, employee_id, raw, offdays)
            except ValidationError as e:
                logger.warning(f"Skipping record: {e}")
                result.skipped_records += 1
                continue
            except IntegrityError:
                logger.info(
                    f"Duplicate entry handled for employee {employee_id} on {raw.get('attendanceDate')}"
                )
                result.duplicate_records += 1
                continue

            if outcome == "inserted":
                result.new_records += 1
            elif outcome == "updated":
                result.updated_records += 1
            else:
                result.unchanged_records += 1

        return result
