"""Read-only access to doctors and users."""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.doctors import doctors
from app.models.users import users
from app.repositories.errors import storage_errors


class DirectoryRepository:
    """Lookups of the collaborator entities the appointment core references."""

    def __init__(self, db: AsyncSession):
        """Initialize repository with database session."""
        self.db = db

    async def get_doctor(self, doctor_id: int) -> dict[str, Any] | None:
        """Fetch a doctor by id."""
        stmt = select(doctors).where(doctors.c.id == doctor_id)

        async with storage_errors(self.db, "get_doctor"):
            result = await self.db.execute(stmt)
            row = result.mappings().first()
            await self.db.commit()

        return dict(row) if row else None

    async def get_user(self, user_id: int) -> dict[str, Any] | None:
        """Fetch a user by id."""
        stmt = select(users).where(users.c.id == user_id)

        async with storage_errors(self.db, "get_user"):
            result = await self.db.execute(stmt)
            row = result.mappings().first()
            await self.db.commit()

        return dict(row) if row else None
