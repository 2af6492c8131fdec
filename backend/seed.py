"""Seed script for the studiobook backend.

Creates baseline data for local testing:
- 1 admin user
- 1 studio and 1 artist, each with a service catalogue and weekly hours
- 2 clients

Idempotent: users and providers are looked up by email before creating them.
Run with: python seed.py
"""

import asyncio
import sys
import uuid
from datetime import time
from decimal import Decimal

from app.config import settings

# Guard: prevent running on production
if settings.APP_ENV == "production":
    print("ERROR: Cannot seed production database.")
    sys.exit(1)

from sqlalchemy import select

from app.auth.service import create_access_token
from app.database import async_session
from app.models.availability import ProviderAvailability
from app.models.enums import ProviderKind, UserRole
from app.models.provider import Provider
from app.models.user import User


SEED_USERS = [
    {"email": "admin@studiobook.lk", "role": UserRole.ADMIN, "first_name": "Admin", "last_name": "Studiobook"},
    {"email": "harbour@studiobook.lk", "role": UserRole.STUDIO, "first_name": "Ruwan", "last_name": "Perera"},
    {"email": "dilani@studiobook.lk", "role": UserRole.ARTIST, "first_name": "Dilani", "last_name": "Fernando"},
    {"email": "client1@studiobook.lk", "role": UserRole.CLIENT, "first_name": "Kasun", "last_name": "Silva"},
    {"email": "client2@studiobook.lk", "role": UserRole.CLIENT, "first_name": "Ishara", "last_name": "Jayasuriya"},
]


PROVIDERS = [
    {
        "email": "harbour@studiobook.lk",
        "kind": ProviderKind.STUDIO,
        "name": "Harbour Sound",
        "hourly_rate": "2500.00",
        "services": [
            {"name": "Mixing", "price": "6000.00", "category": "post", "duration_mins": 120},
            {"name": "Mixing + Mastering", "price": "8000.00", "category": "post", "duration_mins": 180},
        ],
        "equipment": [
            {"name": "Neumann U87", "rental_price": "1500.00"},
            {"name": "Drum kit", "rental_price": "1000.00"},
        ],
        # Monday to Saturday, 10:00-22:00 UTC
        "days_of_week": [0, 1, 2, 3, 4, 5],
        "hours": (time(10, 0), time(22, 0)),
    },
    {
        "email": "dilani@studiobook.lk",
        "kind": ProviderKind.ARTIST,
        "name": "Dilani F.",
        "hourly_rate": "4000.00",
        "services": [
            {"name": "Session vocals", "price": "12000.00", "category": "performance", "duration_mins": 120},
        ],
        "equipment": [],
        "days_of_week": [4, 5, 6],
        "hours": (time(14, 0), time(20, 0)),
    },
]


async def seed() -> None:
    async with async_session() as db:
        user_map: dict[str, User] = {}

        for user_data in SEED_USERS:
            result = await db.execute(select(User).where(User.email == user_data["email"]))
            existing = result.scalar_one_or_none()
            if existing:
                print(f"  [skip] User {user_data['email']} already exists")
                user_map[user_data["email"]] = existing
                continue

            user = User(id=uuid.uuid4(), **user_data)
            db.add(user)
            await db.flush()
            user_map[user_data["email"]] = user
            print(f"  [created] User {user_data['email']} ({user_data['role'].value})")

        for provider_data in PROVIDERS:
            owner = user_map[provider_data["email"]]
            result = await db.execute(select(Provider).where(Provider.user_id == owner.id))
            if result.scalar_one_or_none():
                print(f"  [skip] Provider for {provider_data['email']} already exists")
                continue

            provider = Provider(
                id=uuid.uuid4(),
                user_id=owner.id,
                kind=provider_data["kind"],
                name=provider_data["name"],
                hourly_rate=Decimal(provider_data["hourly_rate"]),
                services=provider_data["services"],
                equipment=provider_data["equipment"],
            )
            db.add(provider)
            await db.flush()

            opens, closes = provider_data["hours"]
            db.add(ProviderAvailability(
                provider_id=provider.id,
                days_of_week=provider_data["days_of_week"],
                start_time=opens,
                end_time=closes,
                is_available=True,
            ))
            await db.flush()
            print(f"  [created] {provider_data['kind'].value} {provider_data['name']} with weekly hours")

        await db.commit()

        print("\nAccess tokens (valid for the configured lifetime):")
        for email, user in user_map.items():
            print(f"  {email}: {create_access_token(str(user.id))}")
        print("\nSeed completed successfully.")


if __name__ == "__main__":
    print("Seeding studiobook database...")
    asyncio.run(seed())
