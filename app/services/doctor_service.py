"""Doctor lookups used by booking and payments."""

from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.redis_client import CacheManager
from app.repositories.directory_repository import DirectoryRepository


class DoctorService:
    """Service for doctor operations."""

    # Cache TTL in seconds
    DOCTOR_CACHE_TTL = 900  # 15 minutes for individual doctors

    def __init__(self, db: AsyncSession, cache_manager: CacheManager | None = None):
        """Initialize service with database session and optional cache manager."""
        self.directory = DirectoryRepository(db)
        self.cache = cache_manager

    @staticmethod
    def _get_doctor_cache_key(doctor_id: int) -> str:
        """Generate cache key for doctor."""
        return f"doctor:{doctor_id}"

    async def get_doctor(self, doctor_id: int) -> dict[str, Any] | None:
        """Get doctor by ID with caching."""
        if self.cache:
            cached_doctor = self.cache.get_json(self._get_doctor_cache_key(doctor_id))
            if cached_doctor:
                return cached_doctor

        doctor = await self.directory.get_doctor(doctor_id)
        if not doctor:
            return None

        if self.cache:
            self.cache.set_json(
                self._get_doctor_cache_key(doctor_id),
                doctor,
                ttl=self.DOCTOR_CACHE_TTL,
            )

        return doctor

    async def get_bookable_doctor(self, doctor_id: int) -> dict[str, Any] | None:
        """
        Read a doctor straight from the directory for booking.

        Booking must not honour a cached ``is_active`` that went stale, so this
        bypasses the cache and refreshes the entry with what it read.

        Returns:
            The doctor if it exists and is active, otherwise None
        """
        doctor = await self.directory.get_doctor(doctor_id)
        if not doctor:
            return None

        if self.cache:
            self.cache.set_json(
                self._get_doctor_cache_key(doctor_id),
                doctor,
                ttl=self.DOCTOR_CACHE_TTL,
            )

        return doctor if doctor["is_active"] else None

    @staticmethod
    def consultation_fee(doctor: dict[str, Any] | None, fallback: Decimal) -> Decimal:
        """
        Amount to charge for a consultation with a doctor.

        Args:
            doctor: Doctor record (possibly from cache, where numbers are strings)
            fallback: Amount used when the doctor or the fee is missing

        Returns:
            Positive fee, or ``fallback``
        """
        if not doctor or doctor.get("consultation_fee") in (None, ""):
            return fallback

        try:
            fee = Decimal(str(doctor["consultation_fee"]))
        except InvalidOperation:
            return fallback

        return fee if fee > 0 else fallback
