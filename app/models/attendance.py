"""Attendance record database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, Date, DateTime, Float, UniqueConstraint, Index
from app.database.database import Base


class AttendanceRecord(Base):
    """One attendance row per (employee, calendar date).

    Timestamps are stored as naive local-clock datetimes.
    """

    __tablename__ = "attendance"

    row_id = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=True)  # Keka attendance record id
    employee_id = Column(String, nullable=False)
    attendance_date = Column(Date, nullable=False)
    shift_start = Column(DateTime, nullable=False)
    shift_end = Column(DateTime, nullable=False)
    shift_duration = Column(Float, default=0)
    first_in_of_the_day_time = Column(DateTime, nullable=True)
    last_out_of_the_day_time = Column(DateTime, nullable=True)
    total_gross_hours = Column(Float, default=0)
    total_break_duration = Column(Float, default=0)
    total_effective_hours = Column(Float, default=0)
    total_effective_overtime_duration = Column(Float, default=0)
    is_offday = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Constraints
    __table_args__ = (
        UniqueConstraint('employee_id', 'attendance_date', name='uq_attendance_employee_date'),
        Index('ix_attendance_employee_id', 'employee_id'),
    )
