"""Persistence gateway over the appointment, doctor and user tables."""

from app.repositories.appointment_repository import AppointmentRepository
from app.repositories.directory_repository import DirectoryRepository

__all__ = ["AppointmentRepository", "DirectoryRepository"]
