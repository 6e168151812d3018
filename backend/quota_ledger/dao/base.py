"""
Base Data Access Object (DAO) class.

WHY: The DAO pattern separates database operations from business logic.
Ledger counters are deliberately absent from this generic layer: they are
only written by LedgerDAO's conditional updates.
"""

from typing import Generic, TypeVar, Type, Optional, List, Any
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from quota_ledger.models.base import Base

# Type variable for model class
ModelType = TypeVar("ModelType", bound=Base)


class BaseDAO(Generic[ModelType]):
    """
    Base Data Access Object providing the shared read/write helpers.

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

    async def create(self, **kwargs: Any) -> ModelType:
        """
        Create a new record.

        Args:
            **kwargs: Field values for the new record

        Returns:
            The created model instance with database-generated fields populated

        Raises:
            IntegrityError: If unique or check constraints are violated
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        await self.session.flush()  # Flush to get auto-generated fields
        await self.session.refresh(instance)
        return instance

    async def get_by_id(self, id: int) -> Optional[ModelType]:
        """
        Retrieve a single record by primary key.

        Args:
            id: Primary key value

        Returns:
            The model instance if found, None otherwise
        """
        result = await self.session.execute(select(self.model).where(self.model.id == id))
        return result.scalar_one_or_none()

    async def get_by_id_for_update(self, id: int) -> Optional[ModelType]:
        """
        Retrieve a record by primary key and lock its row until commit.

        WHY: Capacity decisions read "allocated - used"; the row lock keeps
        that read valid until the transaction writes its delta.
        ``populate_existing`` refreshes an instance already in the identity
        map so the caller never plans against stale counters.

        Args:
            id: Primary key value

        Returns:
            The locked model instance if found, None otherwise
        """
        # Pending attribute changes would be overwritten by populate_existing.
        await self.session.flush()
        result = await self.session.execute(
            select(self.model)
            .where(self.model.id == id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_all(self, skip: int = 0, limit: int = 100, **filters: Any) -> List[ModelType]:
        """
        Retrieve multiple records with optional pagination and filtering.

        Args:
            skip: Number of records to skip (for pagination)
            limit: Maximum number of records to return
            **filters: Field name to value filters (e.g., organization_id=1)

        Returns:
            List of model instances matching the filters
        """
        query = select(self.model)

        for field, value in filters.items():
            if hasattr(self.model, field):
                query = query.where(getattr(self.model, field) == value)

        query = query.order_by(self.model.id).offset(skip).limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_by_field(self, field_name: str, value: Any) -> Optional[ModelType]:
        """
        Retrieve a single record by a unique field.

        Raises:
            AttributeError: If field_name doesn't exist on the model
        """
        if not hasattr(self.model, field_name):
            raise AttributeError(f"{self.model.__name__} has no field '{field_name}'")

        result = await self.session.execute(
            select(self.model).where(getattr(self.model, field_name) == value)
        )
        return result.scalar_one_or_none()

    async def count(self, **filters: Any) -> int:
        """
        Count records matching filters.

        Args:
            **filters: Field name to value filters

        Returns:
            Number of records matching the filters
        """
        query = select(func.count()).select_from(self.model)

        for field, value in filters.items():
            if hasattr(self.model, field):
                query = query.where(getattr(self.model, field) == value)

        result = await self.session.execute(query)
        return int(result.scalar_one())

    async def delete_instance(self, instance: ModelType) -> None:
        """
        Delete a loaded record.

        WHY: Rows are removed only after the allocation engine has returned
        their bytes to the parent pool, so deletes always go through an
        instance the caller already holds.
        """
        await self.session.delete(instance)
        await self.session.flush()
