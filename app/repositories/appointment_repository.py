"""Appointment persistence gateway."""

from datetime import date
from typing import Any

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BadRequestException, SlotConflictException
from app.models.appointments import ACTIVE_STATUSES, appointments
from app.repositories.errors import storage_errors
from app.schemas.appointments import AppointmentFilters

SLOT_INDEX_NAME = "uq_appointments_active_slot"
# SQLite reports unique violations by column list instead of index name
SLOT_INDEX_COLUMNS = "appointments.doctor_id, appointments.date, appointments.time"


def is_slot_violation(error: IntegrityError) -> bool:
    """Check whether an integrity error comes from the active-slot unique index."""
    message = str(error.orig)
    return SLOT_INDEX_NAME in message or SLOT_INDEX_COLUMNS in message


class AppointmentRepository:
    """Typed CRUD over the appointments table.

    Every write commits on its own; state writes are conditional on the
    version observed by the caller.
    """

    def __init__(self, db: AsyncSession):
        """Initialize repository with database session."""
        self.db = db

    async def find_active_appointment(
        self,
        doctor_id: int,
        slot_date: date,
        slot_time: str,
    ) -> dict[str, Any] | None:
        """Return the active appointment occupying a slot, if any."""
        stmt = select(appointments).where(
            and_(
                appointments.c.doctor_id == doctor_id,
                appointments.c.date == slot_date,
                appointments.c.time == slot_time,
                appointments.c.status.in_(ACTIVE_STATUSES),
            )
        )

        async with storage_errors(self.db, "find_active_appointment"):
            result = await self.db.execute(stmt)
            row = result.mappings().first()
            # Release the read snapshot so it does not pin a transaction open
            await self.db.commit()

        return dict(row) if row else None

    async def list_booked_times(self, doctor_id: int, slot_date: date) -> list[str]:
        """Return time labels held by active appointments for a doctor on a day."""
        stmt = (
            select(appointments.c.time)
            .where(
                and_(
                    appointments.c.doctor_id == doctor_id,
                    appointments.c.date == slot_date,
                    appointments.c.status.in_(ACTIVE_STATUSES),
                )
            )
            .order_by(appointments.c.time)
        )

        async with storage_errors(self.db, "list_booked_times"):
            result = await self.db.execute(stmt)
            times = list(result.scalars().all())
            await self.db.commit()

        return times

    async def create_appointment(self, values: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a new appointment.

        Args:
            values: Column values for the new row

        Returns:
            Created appointment row

        Raises:
            SlotConflictException: If the slot index rejects the insert
            BadRequestException: If the row violates another constraint
        """
        stmt = insert(appointments).values(**values).returning(appointments)

        try:
            async with storage_errors(self.db, "create_appointment"):
                result = await self.db.execute(stmt)
                row = result.mappings().one()
                await self.db.commit()
        except IntegrityError as e:
            if is_slot_violation(e):
                raise SlotConflictException() from e
            raise BadRequestException("Appointment references are invalid") from e

        return dict(row)

    async def get_appointment(self, appointment_id: int) -> dict[str, Any] | None:
        """Fetch one appointment by id."""
        stmt = select(appointments).where(appointments.c.id == appointment_id)

        async with storage_errors(self.db, "get_appointment"):
            result = await self.db.execute(stmt)
            row = result.mappings().first()
            await self.db.commit()

        return dict(row) if row else None

    async def update_appointment_state(
        self,
        appointment_id: int,
        expected_version: int,
        values: dict[str, Any],
    ) -> dict[str, Any] | None:
        """
        Write new state only if the row still carries the expected version.

        Args:
            appointment_id: Appointment ID
            expected_version: Version the caller based its decision on
            values: Columns to update (version is bumped automatically)

        Returns:
            Updated row, or None if another writer got there first

        Raises:
            SlotConflictException: If re-activating the row collides with
                another active appointment on the same slot
        """
        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.version == expected_version,
                )
            )
            .values(**values, version=appointments.c.version + 1)
            .returning(appointments)
        )

        try:
            async with storage_errors(self.db, "update_appointment_state"):
                result = await self.db.execute(stmt)
                row = result.mappings().first()
                await self.db.commit()
        except IntegrityError as e:
            if is_slot_violation(e):
                raise SlotConflictException() from e
            raise BadRequestException("Appointment update violates a constraint") from e

        return dict(row) if row else None

    async def list_appointments(
        self,
        filters: AppointmentFilters,
    ) -> tuple[int, list[dict[str, Any]]]:
        """
        List appointments with filtering and pagination.

        Args:
            filters: Filter and pagination parameters

        Returns:
            Total match count and the requested page of rows
        """
        conditions = []

        if filters.status:
            conditions.append(appointments.c.status == filters.status.value)

        if filters.payment_status:
            conditions.append(appointments.c.payment_status == filters.payment_status.value)

        if filters.patient_id:
            conditions.append(appointments.c.patient_id == filters.patient_id)

        if filters.doctor_id:
            conditions.append(appointments.c.doctor_id == filters.doctor_id)

        if filters.from_date:
            conditions.append(appointments.c.date >= filters.from_date)

        if filters.to_date:
            conditions.append(appointments.c.date <= filters.to_date)

        count_stmt = select(func.count()).select_from(appointments)
        stmt = select(appointments)
        if conditions:
            count_stmt = count_stmt.where(and_(*conditions))
            stmt = stmt.where(and_(*conditions))

        offset = (filters.page - 1) * filters.page_size
        stmt = (
            stmt.order_by(appointments.c.date.desc(), appointments.c.created_at.desc())
            .limit(filters.page_size)
            .offset(offset)
        )

        async with storage_errors(self.db, "list_appointments"):
            total_result = await self.db.execute(count_stmt)
            total = total_result.scalar() or 0

            result = await self.db.execute(stmt)
            rows = [dict(row) for row in result.mappings().all()]
            await self.db.commit()

        return total, rows

    async def count_by_status(self) -> dict[str, dict[str, int]]:
        """
        Count appointments grouped by status and by payment status.

        Returns:
            ``{"status": {...}, "payment_status": {...}}`` with only the values
            that occur
        """
        status_stmt = select(appointments.c.status, func.count()).group_by(appointments.c.status)
        payment_stmt = select(appointments.c.payment_status, func.count()).group_by(
            appointments.c.payment_status
        )

        async with storage_errors(self.db, "count_by_status"):
            status_rows = (await self.db.execute(status_stmt)).all()
            payment_rows = (await self.db.execute(payment_stmt)).all()
            await self.db.commit()

        return {
            "status": {value: count for value, count in status_rows},
            "payment_status": {value: count for value, count in payment_rows},
        }

    async def list_recent(self, limit: int) -> list[dict[str, Any]]:
        """Return the most recently created appointments."""
        stmt = (
            select(appointments)
            .order_by(appointments.c.created_at.desc(), appointments.c.id.desc())
            .limit(limit)
        )

        async with storage_errors(self.db, "list_recent"):
            result = await self.db.execute(stmt)
            rows = [dict(row) for row in result.mappings().all()]
            await self.db.commit()

        return rows
