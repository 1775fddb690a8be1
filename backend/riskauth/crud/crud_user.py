# backend/riskauth/crud/crud_user.py
import logging
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from riskauth.core.security import get_password_hash
from riskauth.crud.base import CRUDBase
from riskauth.db.models.user import User
from riskauth.schemas.user import UserCreate

logger = logging.getLogger(__name__)


class CRUDUser(CRUDBase[User, UserCreate]):
    async def get_by_username(self, db: AsyncSession, *, username: str) -> User | None:
        """
        Get a user by username.
        """
        result = await db.execute(select(self.model).where(self.model.username == username))
        return result.scalars().first()

    async def get_by_email(self, db: AsyncSession, *, email: str) -> User | None:
        """
        Get a user by email (case-insensitive).
        """
        result = await db.execute(
            select(self.model).where(func.lower(self.model.email) == email.lower())
        )
        return result.scalars().first()

    async def get_by_id(self, db: AsyncSession, *, user_id: UUID) -> User | None:
        return await super().get(db, id=user_id)

    async def exists_by_username(self, db: AsyncSession, *, username: str) -> bool:
        result = await db.execute(
            select(func.count()).select_from(self.model).where(self.model.username == username)
        )
        return (result.scalar() or 0) > 0

    async def create(
        self,
        db: AsyncSession,
        *,
        obj_in: UserCreate,
        commit: bool = True,
    ) -> User:
        """
        Create a new user.
        - Hashes the password before storing.
        """
        logger.info(f"Creating new user with username: {obj_in.username}")

        user_data = obj_in.model_dump(exclude={"password"})
        user_data["hashed_password"] = get_password_hash(obj_in.password)

        db_obj = self.model(**user_data)
        db.add(db_obj)
        if commit:
            await db.commit()
            await db.refresh(db_obj)
        else:
            await db.flush()
        logger.info(f"User {db_obj.username} (ID: {db_obj.id}) created successfully.")
        return db_obj


user = CRUDUser(User)
