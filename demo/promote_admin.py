#!/usr/bin/env python3
"""Promote an existing user to ADMIN. Run on the server: python demo/promote_admin.py <email>"""
import asyncio
import sys

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.models.user import User, UserType


async def promote(email: str) -> None:
    engine = create_async_engine(settings.DATABASE_URL)
    sf = async_sessionmaker(engine, class_=AsyncSession)
    async with sf() as s:
        r = await s.execute(
            update(User)
            .where(User.email == email)
            .values(user_type=UserType.ADMIN)
        )
        await s.commit()
        print(f"Rows updated: {r.rowcount}")
    await engine.dispose()


if __name__ == "__main__":
    if len(sys.argv) != 2:
        sys.exit("usage: promote_admin.py <email>")
    asyncio.run(promote(sys.argv[1]))
