"""
Base Data Access Object (DAO) class.

WHY: The DAO pattern separates database operations from business logic,
making the codebase more testable and keeping every SQL statement the
billing services rely on in one layer.
"""

from typing import Generic, TypeVar, Type, Optional, List, Any
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.models.base import Base

# Type variable for model class
ModelType = TypeVar("ModelType", bound=Base)


class BaseDAO(Generic[ModelType]):
    """
    Base Data Access Object providing CRUD operations for all models.

    WHY: Centralizing database operations in DAOs separates data access
    concerns from business logic, making code more testable and maintainable.
    Using generics allows type-safe reuse across different models.

    NOTE: There is no delete. Billing records are never physically removed.

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
            IntegrityError: If unique constraints are violated
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

    async def get_all(self, skip: int = 0, limit: int = 100, **filters: Any) -> List[ModelType]:
        """
        Retrieve multiple records with optional pagination and filtering.

        Args:
            skip: Number of records to skip (for pagination)
            limit: Maximum number of records to return
            **filters: Field name to value filters (None values are ignored)

        Returns:
            List of model instances matching the filters, oldest first
        """
        query = self._apply_filters(select(self.model), filters)
        query = query.order_by(self.model.id).offset(skip).limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def update(self, id: int, **kwargs: Any) -> Optional[ModelType]:
        """
        Update an existing record unconditionally.

        Args:
            id: Primary key of the record to update
            **kwargs: Fields to update

        Returns:
            Updated model instance if found, None otherwise
        """
        result = await self.session.execute(
            update(self.model).where(self.model.id == id).values(**kwargs).returning(self.model)
        )
        instance = result.scalar_one_or_none()
        if instance:
            await self.session.refresh(instance)
        return instance

    async def update_if(self, id: int, conditions: dict, **kwargs: Any) -> bool:
        """
        Update a record only if its current column values match `conditions`.

        WHY: Status claims (scheduled -> processing, pending -> sent,
        sent -> paid) must be atomic across engine instances. The WHERE
        clause carries the expected state, so of two concurrent writers only
        one sees a matched row.

        Args:
            id: Primary key of the record to update
            conditions: Column name to expected value (a tuple/list means IN)
            **kwargs: Fields to update

        Returns:
            True if the row matched and was updated
        """
        query = update(self.model).where(self.model.id == id)
        for field, expected in conditions.items():
            column = getattr(self.model, field)
            if isinstance(expected, (tuple, list, set, frozenset)):
                query = query.where(column.in_(list(expected)))
            else:
                query = query.where(column == expected)

        result = await self.session.execute(
            query.values(**kwargs).execution_options(synchronize_session="fetch")
        )
        return result.rowcount > 0

    async def count(self, **filters: Any) -> int:
        """
        Count records matching filters.

        Args:
            **filters: Field name to value filters

        Returns:
            Number of records matching the filters
        """
        query = self._apply_filters(select(func.count()).select_from(self.model), filters)
        result = await self.session.execute(query)
        return result.scalar_one()

    async def exists(self, **filters: Any) -> bool:
        """
        Check if any records matching filters exist.

        Args:
            **filters: Field name to value filters

        Returns:
            True if at least one matching record exists
        """
        query = self._apply_filters(select(self.model.id), filters).limit(1)
        result = await self.session.execute(query)
        return result.scalar_one_or_none() is not None

    def _apply_filters(self, query, filters: dict):
        for field, value in filters.items():
            if value is None:
                continue
            if not hasattr(self.model, field):
                raise AttributeError(f"{self.model.__name__} has no field '{field}'")
            query = query.where(getattr(self.model, field) == value)
        return query
