"""Local user records and the persisted current-user pointer."""

from __future__ import annotations

import logging

from peelog.core.schemas import AuthProvider, User, UserPreferences, format_timestamp, utcnow
from peelog.storage.database import Database

logger = logging.getLogger(__name__)

CURRENT_USER_KEY = "current_user_id"


class UserStore:
    """CRUD for ``users`` plus the current-user pointer in the config table."""

    def __init__(self, db: Database):
        self.db = db

    async def save(self, user: User) -> User:
        user.updated_at = utcnow()
        await self.db.upsert("users", user.to_db_dict())
        return user

    async def get(self, user_id: str) -> User | None:
        row = await self.db.fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return User.from_db_row(row) if row else None

    async def get_by_email(self, email: str) -> User | None:
        row = await self.db.fetch_one(
            "SELECT * FROM users WHERE lower(email) = lower(?) ORDER BY updated_at DESC LIMIT 1",
            (email,),
        )
        return User.from_db_row(row) if row else None

    async def most_recent(self, provider: AuthProvider | None = None) -> User | None:
        """Most recently updated user, optionally restricted to one provider."""
        if provider is None:
            row = await self.db.fetch_one("SELECT * FROM users ORDER BY updated_at DESC LIMIT 1")
        else:
            row = await self.db.fetch_one(
                "SELECT * FROM users WHERE auth_provider = ? ORDER BY updated_at DESC LIMIT 1",
                (provider.value,),
            )
        return User.from_db_row(row) if row else None

    async def list_users(self) -> list[User]:
        rows = await self.db.fetch_all("SELECT * FROM users ORDER BY updated_at DESC")
        return [User.from_db_row(row) for row in rows]

    async def delete(self, user_id: str) -> None:
        await self.db.execute("DELETE FROM users WHERE id = ?", (user_id,))
        if await self.current_user_id() == user_id:
            await self.db.delete_config(CURRENT_USER_KEY)
        logger.info(f"User {user_id} deleted")

    async def update_preferences(self, user_id: str, preferences: UserPreferences) -> User | None:
        user = await self.get(user_id)
        if user is None:
            return None
        user.preferences = preferences
        return await self.save(user)

    async def touch(self, user_id: str) -> None:
        """Mark a user as the most recently used."""
        await self.db.execute(
            "UPDATE users SET updated_at = ? WHERE id = ?", (format_timestamp(utcnow()), user_id)
        )

    async def current_user_id(self) -> str | None:
        return await self.db.get_config(CURRENT_USER_KEY)

    async def set_current_user_id(self, user_id: str | None) -> None:
        if user_id is None:
            await self.db.delete_config(CURRENT_USER_KEY)
        else:
            await self.db.set_config(CURRENT_USER_KEY, user_id)
