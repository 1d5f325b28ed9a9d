"""Employee database model."""

from sqlalchemy import Column, Integer, String, Date
from app.database.database import Base


class Employee(Base):
    """Local roster entry for a factory-floor employee.

    Roster membership is managed outside the sync; the employee sync only
    fills in ``employee_id`` and ``joining_date`` on existing rows.
    """

    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    employee_id = Column(String, nullable=True, unique=True)  # Keka employee id
    floor = Column(String, nullable=True)
    division = Column(String, nullable=True)
    machine = Column(String, nullable=True)
    jobtitle = Column(String, nullable=True)
    regular_shift_start = Column(String, nullable=True)
    regular_shift_end = Column(String, nullable=True)
    offdays = Column(String, nullable=True)  # comma separated weekday names
    joining_date = Column(Date, nullable=True)
