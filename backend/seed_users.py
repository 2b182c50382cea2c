"""
Database seeding script for the team and the program catalog.

Creates an ADMIN (owner), a MANAGER and two TRAINER users plus a few
programs for testing and development.
Run this script after database is set up but before first use.
"""

import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from backend.app.db.session import AsyncSessionLocal, engine, Base
from backend.app.models.user import User
from backend.app.models.program import Program
from backend.app.models.enums import UserRole
from sqlalchemy import select

TEAM = [
    ("owner@gym.example", "Gym Owner", UserRole.ADMIN),
    ("manager@gym.example", "Front Desk Manager", UserRole.MANAGER),
    ("alex@gym.example", "Alex Trainer", UserRole.TRAINER),
    ("jordan@gym.example", "Jordan Trainer", UserRole.TRAINER),
]

PROGRAMS = [
    ("12-Week Transformation", Decimal("700.00"), 3, True),
    ("Monthly Coaching", Decimal("250.00"), None, True),
    ("Single Assessment", Decimal("120.00"), None, False),
]


async def seed_users():
    """
    Seed the team and the program catalog.

    Creates:
    - 1 ADMIN (owner, keeps the full sale amount as commission)
    - 1 MANAGER
    - 2 TRAINER users (70% commission)
    - 3 programs
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting seeding...")

        result = await db.execute(select(User).where(User.role == UserRole.ADMIN))
        if result.scalars().first():
            print("ℹ️  ADMIN user already exists, skipping seeding")
            return

        for email, name, role in TEAM:
            db.add(User(email=email, name=name, role=role, is_active=True))
            print(f"✅ Created {role.value.upper()} user ({email})")

        for name, price, months, recurring in PROGRAMS:
            db.add(Program(
                name=name,
                default_price=price,
                default_duration_months=months,
                is_recurring=recurring,
            ))
            print(f"✅ Created program '{name}' (${price})")

        await db.commit()

        print("\n🎉 Seeding completed successfully!")
        print("\nNote: team members sign in through the identity service;")
        print("      use backend.app.core.jwt.create_access_token for local tokens.")


if __name__ == "__main__":
    asyncio.run(seed_users())
