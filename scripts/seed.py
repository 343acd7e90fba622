"""
Seed Script

Creates the demo accounts used by ``scripts/simulate.py``:
one admin, two restaurants and N couriers, all with the same password.

Run from project root: python scripts/seed.py --couriers 10

Version: 1.0.0
"""

import argparse
import asyncio
import sys

from sqlalchemy import select

from courier_dispatch.core.security import hash_password
from courier_dispatch.database import async_session_maker, engine, init_db
from courier_dispatch.models import Admin, Courier, Restaurant

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


async def seed(num_couriers: int, password: str) -> None:
    await init_db()
    password_hash = hash_password(password)
    created = 0

    async with async_session_maker() as db:
        accounts = [Admin(name="Admin", email="admin@example.com", password_hash=password_hash)]
        accounts += [
            Restaurant(name=f"Restaurant {i}", email=f"restaurant{i}@example.com", password_hash=password_hash)
            for i in (1, 2)
        ]
        accounts += [
            Courier(name=f"Courier {i}", email=f"courier{i}@example.com", password_hash=password_hash)
            for i in range(1, num_couriers + 1)
        ]
        for account in accounts:
            model = type(account)
            exists = await db.scalar(select(model.id).where(model.email == account.email))
            if exists is None:
                db.add(account)
                created += 1
        await db.commit()

    await engine.dispose()
    print(f"✅ Seeded {created} account(s) (password: {password})")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed demo accounts")
    parser.add_argument("--couriers", type=int, default=5)
    parser.add_argument("--password", default="password123")
    args = parser.parse_args()
    asyncio.run(seed(args.couriers, args.password))
