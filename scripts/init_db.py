"""Script to initialize the database and seed demo data."""

import asyncio
from decimal import Decimal

from sqlalchemy import func, insert, select

from app.core.security import create_access_token
from app.database import engine
from app.models import doctors, metadata, users

DEMO_USERS = [
    {"email": "admin@medbook.local", "full_name": "Clinic Admin", "role": "admin"},
    {"email": "patient@medbook.local", "full_name": "Demo Patient", "role": "patient"},
]

DEMO_DOCTORS = [
    {"name": "Dr. Nimal Perera", "specialty": "Cardiology", "consultation_fee": Decimal("3500")},
    {
        "name": "Dr. Ayesha Fernando",
        "specialty": "Dermatology",
        "consultation_fee": Decimal("2990"),
    },
    {"name": "Dr. Ravi Silva", "specialty": "General Practice", "consultation_fee": None},
]


async def init_db(seed: bool = True) -> None:
    """Create all tables and, on an empty database, insert demo users and doctors."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        print("✓ Tables created")

        if not seed:
            return

        user_count = (await conn.execute(select(func.count()).select_from(users))).scalar_one()
        if user_count == 0:
            await conn.execute(insert(users), DEMO_USERS)
            print(f"✓ Seeded {len(DEMO_USERS)} users")

        doctor_count = (await conn.execute(select(func.count()).select_from(doctors))).scalar_one()
        if doctor_count == 0:
            await conn.execute(insert(doctors), DEMO_DOCTORS)
            print(f"✓ Seeded {len(DEMO_DOCTORS)} doctors")

        rows = (await conn.execute(select(users.c.id, users.c.email).order_by(users.c.id))).all()

    print("\nDemo access tokens:")
    for row in rows:
        print(f"  {row.email}: {create_access_token({'sub': str(row.id)})}")

    print("\n✓ Database initialized successfully!")


if __name__ == "__main__":
    asyncio.run(init_db())
