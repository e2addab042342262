import asyncio
import os

from sqlalchemy import select

from app.core.auth.security import hash_password
from app.core.users.models import User, UserRole
from app.db.session import get_session


async def seed() -> None:
    admin_email = os.getenv("SEED_ADMIN_EMAIL", "admin@example.com")
    admin_password = os.getenv("SEED_ADMIN_PASSWORD", "changeme123!")

    async with get_session() as db:
        existing = await db.execute(select(User).where(User.email == admin_email.lower()))
        user = existing.scalar_one_or_none()

        if not user:
            user = User(
                email=admin_email.lower(),
                name="Administrator",
                hashed_password=hash_password(admin_password),
                role=UserRole.admin,
            )
            db.add(user)
            await db.flush()
            print(f"Admin created: {user.email}")
        else:
            print(f"Admin exists: {user.email}")


if __name__ == "__main__":
    asyncio.run(seed())
