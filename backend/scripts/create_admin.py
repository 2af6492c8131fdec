"""Register an admin user and print a bearer token for it.

Accounts are managed by the identity service; this only creates the local
principal so payouts, refunds and the reconciliation queue can be operated.

Usage:
    python scripts/create_admin.py ops@studiobook.lk
"""

import asyncio
import sys

from sqlalchemy import select

from app.auth.service import create_access_token
from app.database import async_session
from app.models.enums import UserRole
from app.models.user import User


async def create_admin(email: str) -> None:
    async with async_session() as db:
        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
        if user is not None and user.role != UserRole.ADMIN:
            print(f"Error: User with email '{email}' already exists with role '{user.role}'.")
            sys.exit(1)

        if user is None:
            user = User(email=email, role=UserRole.ADMIN)
            db.add(user)
            await db.commit()
            print(f"Admin user created: {email} (id={user.id})")
        else:
            print(f"Admin user already exists: {email} (id={user.id})")

        print(f"Token: {create_access_token(str(user.id))}")


def main() -> None:
    if len(sys.argv) != 2:
        print("Usage: python scripts/create_admin.py <email>")
        sys.exit(1)

    asyncio.run(create_admin(sys.argv[1]))


if __name__ == "__main__":
    main()
