"""Employee snapshot reader.

Normalizes employee rows from the HR record store into immutable
EmployeeSnapshot values. Downstream components never see ORM objects.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import Employee
from .exceptions import SnapshotUnavailableError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmployeeSnapshot:
    """Read-only projection of an employee for one evaluation run."""
    id: str
    display_name: str
    email: str | None
    visa_expiry_date: date | None
    company_name: str
    department: str | None = None
    nationality: str | None = None
    is_active: bool = True
    employee_code: str | None = None
    trade: str | None = None

    @classmethod
    def from_record(cls, employee: Employee) -> "EmployeeSnapshot":
        return cls(
            id=str(employee.id),
            display_name=(employee.name or "").strip(),
            email=(employee.email or "").strip() or None,
            visa_expiry_date=employee.visa_expiry_date,
            company_name=employee.company_name or "",
            department=employee.department or None,
            nationality=employee.nationality or None,
            is_active=bool(employee.is_active),
            employee_code=employee.employee_code,
            trade=employee.trade,
        )


class EmployeeRecordSource(ABC):
    """Abstract source of employee records."""

    @abstractmethod
    async def fetch_active_employees_with_expiry(self) -> list[EmployeeSnapshot]:
        """
        Return every active employee with a visa expiry date.

        Raises:
            SnapshotUnavailableError: the store could not be read
        """
        pass


class SqlEmployeeSource(EmployeeRecordSource):
    """Employee record source backed by the shared relational store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def fetch_active_employees_with_expiry(self) -> list[EmployeeSnapshot]:
        query = (
            select(Employee)
            .where(
                Employee.is_active.is_(True),
                Employee.visa_expiry_date.isnot(None),
            )
            .order_by(Employee.visa_expiry_date.asc())
        )

        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                employees = result.scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise SnapshotUnavailableError(f"Failed to fetch employees: {e}") from e

        snapshot = [EmployeeSnapshot.from_record(e) for e in employees]
        logger.info(f"Loaded snapshot of {len(snapshot)} active employees with visa expiry")
        return snapshot


class StaticEmployeeSource(EmployeeRecordSource):
    """In-memory source for callers that already hold the records."""

    def __init__(self, employees: list[EmployeeSnapshot]):
        self._employees = list(employees)

    async def fetch_active_employees_with_expiry(self) -> list[EmployeeSnapshot]:
        return [
            e for e in self._employees
            if e.is_active and e.visa_expiry_date is not None
        ]
