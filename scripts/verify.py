"""
Database Verification Script

Checks the persisted dispatch invariants:
    - pending orders never reference a courier
    - assigned / awaiting_approval orders always name a courier
    - at most one active session per (user, role)

Run from project root: python scripts/verify.py

Version: 1.0.0
"""

import asyncio
import sys
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from courier_dispatch.database import async_session_maker, engine
from courier_dispatch.models import HELD_STATUSES, ActiveSession, Order, OrderStatus

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


async def count_courier_mismatches(db: AsyncSession) -> tuple[int, int]:
    """
    Returns (pending orders naming a courier, held orders without one).

    Delivered orders keep their courier as the delivery record, so only the
    pending pool and the held statuses are checked.
    """
    stray = await db.scalar(
        select(func.count(Order.id)).where(
            Order.courier_id.is_not(None), Order.status == OrderStatus.PENDING
        )
    )
    orphaned = await db.scalar(
        select(func.count(Order.id)).where(
            Order.courier_id.is_(None), Order.status.in_(HELD_STATUSES)
        )
    )
    return stray, orphaned


async def verify_database() -> bool:
    print("=" * 60)
    print("🔍 DISPATCH VERIFICATION REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 60)

    ok = True
    async with async_session_maker() as db:
        # Statistics
        result = await db.execute(select(Order.status, func.count(Order.id)).group_by(Order.status))
        print(f"\n📊 ORDERS BY STATUS:")
        for status, count in result.all():
            print(f"   {status.value:<20} {count}")

        stray, orphaned = await count_courier_mismatches(db)
        if stray:
            print(f"\n⚠️ {stray} pending order(s) still reference a courier")
            ok = False
        else:
            print(f"\n✅ No pending order references a courier")

        if orphaned:
            print(f"⚠️ {orphaned} held order(s) without a courier")
            ok = False
        else:
            print(f"✅ Every held order names its courier")

        duplicates = (await db.execute(
            select(ActiveSession.user_id, ActiveSession.user_role, func.count(ActiveSession.id))
            .where(ActiveSession.is_active.is_(True))
            .group_by(ActiveSession.user_id, ActiveSession.user_role)
            .having(func.count(ActiveSession.id) > 1)
        )).all()
        if duplicates:
            print(f"⚠️ {len(duplicates)} account(s) with more than one active session:")
            for user_id, role, count in duplicates[:5]:
                print(f"   {role} #{user_id}: {count} sessions")
            ok = False
        else:
            print(f"✅ At most one active session per account")

    await engine.dispose()

    print("\n" + "=" * 60)
    print("✅ VERIFICATION PASSED" if ok else "❌ VERIFICATION FAILED")
    print("=" * 60)
    return ok


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(verify_database()) else 1)
