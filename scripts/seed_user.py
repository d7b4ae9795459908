#!/usr/bin/env python
"""Create (or promote) a local wiki user.

    python scripts/seed_user.py <username> <email> <password> [--admin|--editor]
"""
import asyncio
import os
import sys

# add project root (one level up from /scripts) to import path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from squirrel.src.modules.users_service import UserService
from squirrel.src.modules.wiki_db import AsyncSessionLocal, create_all


async def seed(username: str, email: str, password: str, role: str | None) -> None:
    await create_all()
    async with AsyncSessionLocal() as session:
        users = UserService(session)
        existing = await users.get_by_username(username)
        if existing is None:
            user = await users.create_local_user(
                username,
                email,
                password,
                is_admin=role == "--admin",
                is_editor=role in ("--admin", "--editor"),
                created_by="seed_user",
            )
            print(f"created {user.username} ({', '.join(user.roles) or 'Viewer'})")
            return
        await users.set_password(existing.id, password)
        if role == "--admin":
            existing = await users.promote_to_admin(existing.id, assigned_by="seed_user")
        elif role == "--editor":
            existing = await users.promote_to_editor(existing.id, assigned_by="seed_user")
        print(f"updated {existing.username} ({', '.join(existing.roles) or 'Viewer'})")


if __name__ == "__main__":
    if len(sys.argv) < 4:
        print(__doc__)
        sys.exit(1)
    asyncio.run(seed(sys.argv[1], sys.argv[2], sys.argv[3], sys.argv[4] if len(sys.argv) > 4 else None))
