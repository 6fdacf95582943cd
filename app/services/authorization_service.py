"""Authorization checks for appointment operations."""

from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ForbiddenException, UnauthorizedException
from app.repositories.directory_repository import DirectoryRepository

logger = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"
PATIENT_ROLE = "patient"


@dataclass(frozen=True)
class Actor:
    """The authenticated user performing an operation."""

    user_id: int
    role: str

    @classmethod
    def from_user(cls, user: dict[str, Any]) -> "Actor":
        """Build an actor from a users row."""
        return cls(user_id=int(user["id"]), role=str(user["role"]))

    @property
    def is_admin(self) -> bool:
        """Whether the actor holds admin capability."""
        return self.role == ADMIN_ROLE

    @property
    def label(self) -> str:
        """Short identifier used in audit logs."""
        return f"{self.role}:{self.user_id}"


class AuthorizationService:
    """Single authority for who may do what.

    Roles are always read from the users table rather than trusted from the
    token, so a revoked admin loses access on the next request.
    """

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.directory = DirectoryRepository(db)

    async def get_active_user(self, user_id: int) -> dict[str, Any]:
        """
        Load the user behind a token.

        Args:
            user_id: User ID from the access token

        Returns:
            User data from database

        Raises:
            UnauthorizedException: If the user does not exist
            ForbiddenException: If the account is deactivated
        """
        user = await self.directory.get_user(user_id)

        if not user:
            raise UnauthorizedException("User not found")

        if not user["is_active"]:
            raise ForbiddenException("User account is deactivated")

        return user

    @staticmethod
    def ensure_admin(actor: Actor) -> None:
        """Raise unless the actor is an admin."""
        if not actor.is_admin:
            logger.warning("admin_access_denied", actor=actor.label)
            raise ForbiddenException("Admin privileges required")

    @staticmethod
    def ensure_patient(actor: Actor) -> None:
        """Raise unless the actor books as a patient; admins do not hold slots."""
        if actor.role != PATIENT_ROLE:
            logger.warning("patient_access_denied", actor=actor.label)
            raise ForbiddenException("Only patients can book appointments")

    @staticmethod
    def ensure_can_access(actor: Actor, appointment: dict[str, Any]) -> None:
        """Raise unless the actor owns the appointment or is an admin."""
        if actor.is_admin or int(appointment["patient_id"]) == actor.user_id:
            return

        logger.warning(
            "appointment_access_denied",
            actor=actor.label,
            appointment_id=appointment["id"],
        )
        raise ForbiddenException("You do not have permission to access this appointment")
