"""
Base Repository for StellarRec Submission Monitoring

Generic async repository implementing the CRUD operations the concrete
repositories share. Callers own the transaction: repositories flush but
never commit.
"""

from typing import Any, Dict, Generic, Optional, Type, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel


ModelType = TypeVar("ModelType", bound=SQLModel)


class BaseRepository(Generic[ModelType]):
    """
    Generic async repository with CRUD operations.

    Args:
        model: The SQLModel class to operate on
        session: Async database session
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        self._model = model
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Get the current session."""
        return self._session

    async def get_by_id(self, id: UUID) -> Optional[ModelType]:
        """Get a single record by its primary key."""
        return await self._session.get(self._model, id)

    async def add(self, db_obj: ModelType) -> ModelType:
        """
        Persist a new record.

        Args:
            db_obj: Model instance to insert

        Returns:
            The same instance, flushed and refreshed
        """
        self._session.add(db_obj)
        await self._session.flush()
        await self._session.refresh(db_obj)
        return db_obj

    async def update_fields(
        self,
        id: UUID,
        values: Dict[str, Any]
    ) -> Optional[ModelType]:
        """
        Update selected fields of an existing record.

        Returns:
            Updated model instance or None if not found
        """
        db_obj = await self.get_by_id(id)
        if not db_obj:
            return None

        for field, value in values.items():
            setattr(db_obj, field, value)

        self._session.add(db_obj)
        await self._session.flush()
        await self._session.refresh(db_obj)
        return db_obj

    async def delete(self, id: UUID) -> bool:
        """
        Delete a record by ID.

        Returns:
            True if deleted, False if not found
        """
        db_obj = await self.get_by_id(id)
        if not db_obj:
            return False

        await self._session.delete(db_obj)
        await self._session.flush()
        return True

    async def count(self) -> int:
        """Get total count of records."""
        stmt = select(func.count()).select_from(self._model)
        result = await self._session.execute(stmt)
        return result.scalar_one()
