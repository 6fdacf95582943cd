"""Appointments table model using SQLAlchemy Core."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Table,
    Text,
    func,
)

from app.models.metadata import metadata

ACTIVE_STATUSES = ("pending", "confirmed")

appointments = Table(
    "appointments",
    metadata,
    # AUTOINCREMENT keeps ids from being reused after deletes
    Column("id", Integer, primary_key=True, autoincrement=True),
    # Ownership / references
    Column("doctor_id", Integer, ForeignKey("doctors.id"), nullable=False, index=True),
    Column("patient_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    # Slot
    Column("date", Date, nullable=False),
    Column("time", Text, nullable=False),
    # Status management
    Column("status", Text, nullable=False, server_default="pending"),
    Column("payment_status", Text, nullable=False, server_default="pending"),
    # Details
    Column("symptoms", Text, nullable=False),
    Column("notes", Text, nullable=False, server_default=""),
    # Optimistic concurrency token, bumped on every state write
    Column("version", Integer, nullable=False, server_default="1"),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    # Constraints
    CheckConstraint(
        "status IN ('pending', 'confirmed', 'cancelled', 'completed')",
        name="appointments_status_check",
    ),
    CheckConstraint(
        "payment_status IN ('pending', 'paid', 'failed', 'refunded')",
        name="appointments_payment_status_check",
    ),
    sqlite_autoincrement=True,
)

# At most one active appointment per (doctor, date, time) slot
Index(
    "uq_appointments_active_slot",
    appointments.c.doctor_id,
    appointments.c.date,
    appointments.c.time,
    unique=True,
    postgresql_where=appointments.c.status.in_(ACTIVE_STATUSES),
    sqlite_where=appointments.c.status.in_(ACTIVE_STATUSES),
)
