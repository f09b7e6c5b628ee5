"""
Base Repository

Abstract base class for repositories over the clinic data store.
Supports both Supabase and in-memory backends.
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from typing import Any, Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel

T = TypeVar("T", bound=BaseModel)


async def execute(query: Any) -> Any:
    """Run a postgrest query built on either the sync or the async client."""
    response = query.execute()
    if inspect.isawaitable(response):
        response = await response
    return response


class Repository(ABC, Generic[T]):
    """
    Abstract repository base class.

    Provides a consistent interface for data access across
    different storage backends (Supabase, in-memory).
    """

    def __init__(self, client: Any = None):
        """
        Initialize repository.

        Args:
            client: Supabase client (sync or async) or None for in-memory
        """
        self.client = client
        self._in_memory_store: dict[UUID, T] = {}

    @property
    @abstractmethod
    def table_name(self) -> str:
        """Get the database table name for this repository."""
        pass

    @property
    @abstractmethod
    def model_class(self) -> type[T]:
        """Get the Pydantic model class for this repository."""
        pass

    async def get(self, id: UUID) -> Optional[T]:
        """Get entity by ID."""
        if self.client:
            result = await self._db_get(id)
            return self.model_class(**result) if result else None
        return self._in_memory_store.get(id)

    async def create(self, entity: T) -> T:
        """Create a new entity."""
        if self.client:
            result = await self._db_create(entity)
            return self.model_class(**result)
        self._in_memory_store[entity.id] = entity
        return entity

    async def delete(self, id: UUID) -> bool:
        """Delete an entity."""
        if self.client:
            return await self._db_delete(id)
        return self._in_memory_store.pop(id, None) is not None

    # Database-specific implementations (for Supabase)
    async def _db_get(self, id: UUID) -> Optional[dict]:
        query = self.client.table(self.table_name).select("*").eq("id", str(id)).limit(1)
        response = await execute(query)
        return response.data[0] if response.data else None

    async def _db_create(self, entity: T) -> dict:
        data = entity.model_dump(mode="json", exclude_none=True)
        response = await execute(self.client.table(self.table_name).insert(data))
        return response.data[0]

    async def _db_delete(self, id: UUID) -> bool:
        response = await execute(self.client.table(self.table_name).delete().eq("id", str(id)))
        return len(response.data) > 0
