"""
Base Data Access Object (DAO) class.

WHY: The DAO pattern separates database operations from business logic.
Engines call DAO methods and never build queries themselves, which keeps
locking (SELECT ... FOR UPDATE) and uniqueness handling in one layer.
"""

import uuid
from typing import Generic, TypeVar, Type, Optional, Any

from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.core.exceptions import DatabaseError, DuplicateUpstreamIDError
from billing_core.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseDAO(Generic[ModelType]):
    """
    Base Data Access Object providing CRUD operations for all models.

    Type Parameters:
        ModelType: The SQLAlchemy model class this DAO manages
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        """
        Initialize DAO with model class and database session.

        Args:
            model: The SQLAlchemy model class
            session: Async database session
        """
        self.model = model
        self.session = session

    async def flush(self) -> None:
        """
        Flush pending changes, translating constraint violations.

        WHY: A unique violation on an upstream identifier means the gateway
        object is already linked to another row. Callers get a typed
        conflict instead of a driver error.

        Raises:
            DuplicateUpstreamIDError: On unique constraint violations
            DatabaseError: On other integrity violations
        """
        try:
            await self.session.flush()
        except IntegrityError as e:
            message = str(e.orig).lower()
            if "unique" in message or "duplicate" in message:
                raise DuplicateUpstreamIDError(
                    model=self.model.__name__,
                    error=str(e.orig),
                )
            raise DatabaseError(
                message="Integrity constraint violated",
                model=self.model.__name__,
            )

    async def create(self, **kwargs: Any) -> ModelType:
        """
        Create a new record.

        Args:
            **kwargs: Field values for the new record

        Returns:
            The created model instance with generated fields populated
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        await self.flush()
        await self.session.refresh(instance)
        return instance

    async def get_by_id(self, id: uuid.UUID) -> Optional[ModelType]:
        """
        Retrieve a single record by primary key.

        Returns:
            The model instance if found, None otherwise
        """
        result = await self.session.execute(select(self.model).where(self.model.id == id))
        return result.scalar_one_or_none()

    async def get_by_id_for_update(self, id: uuid.UUID) -> Optional[ModelType]:
        """
        Retrieve a record by primary key and lock its row.

        WHY: Read-modify-write on counters and status must be serialized
        for the rest of the transaction.
        """
        result = await self.session.execute(
            select(self.model).where(self.model.id == id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_by_field(self, field_name: str, value: Any) -> Optional[ModelType]:
        """
        Retrieve a single record by any field.

        Raises:
            AttributeError: If field_name doesn't exist on the model
        """
        if not hasattr(self.model, field_name):
            raise AttributeError(f"{self.model.__name__} has no field '{field_name}'")

        result = await self.session.execute(
            select(self.model).where(getattr(self.model, field_name) == value)
        )
        return result.scalar_one_or_none()

    async def update(self, instance: ModelType, **kwargs: Any) -> ModelType:
        """
        Update fields on a loaded instance and flush.

        WHY: Engines already hold the (usually locked) instance; updating it
        in place keeps the identity map consistent.
        """
        for field, value in kwargs.items():
            setattr(instance, field, value)
        await self.flush()
        return instance

    async def delete(self, id: uuid.UUID) -> bool:
        """
        Hard-delete a record by primary key.

        Returns:
            True if a record was deleted, False if not found
        """
        result = await self.session.execute(delete(self.model).where(self.model.id == id))
        return result.rowcount > 0

    async def count(self, **filters: Any) -> int:
        """Count records matching filters."""
        query = select(func.count()).select_from(self.model)

        for field, value in filters.items():
            if hasattr(self.model, field):
                query = query.where(getattr(self.model, field) == value)

        result = await self.session.execute(query)
        return int(result.scalar_one())
