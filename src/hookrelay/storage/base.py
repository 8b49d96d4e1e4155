"""Base storage class and helpers.

Contains engine lifecycle, schema creation, and row/model conversion.
"""

from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from hookrelay.config import settings
from hookrelay.models import Delivery, Endpoint

from .tables import metadata

ModelT = TypeVar("ModelT", Endpoint, Delivery)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class StorageBase:
    """Base class for hookrelay storage with initialization and helpers.

    Provides:
    - Engine initialization and lifecycle management
    - Table creation
    - Row serialization/deserialization
    """

    def __init__(
        self,
        url: str | None = None,
        echo: bool | None = None,
        pool_size: int | None = None,
    ) -> None:
        """Initialize storage client.

        Args:
            url: SQLAlchemy async URL. Defaults to settings.database_url.
            echo: Echo SQL. Defaults to settings.database_echo.
            pool_size: Connection pool size. Defaults to settings.database_pool_size.
        """
        self._url = url or settings.database_url
        self._echo = settings.database_echo if echo is None else echo
        self._pool_size = pool_size or settings.database_pool_size
        self._engine: AsyncEngine | None = None

    @property
    def engine(self) -> AsyncEngine:
        """Get the engine, raising if not initialized."""
        if self._engine is None:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self._engine

    @property
    def is_sqlite(self) -> bool:
        return self._url.startswith("sqlite")

    async def initialize(self) -> None:
        """Create the engine and ensure tables exist."""
        if self.is_sqlite:
            # One writer at a time: serialise through a single pooled connection
            self._engine = create_async_engine(
                self._url,
                echo=self._echo,
                poolclass=AsyncAdaptedQueuePool,
                pool_size=1,
                max_overflow=0,
            )
            event.listen(self._engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        else:
            self._engine = create_async_engine(
                self._url,
                echo=self._echo,
                pool_size=self._pool_size,
                max_overflow=self._pool_size,
                pool_pre_ping=True,
            )

        async with self._engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        """Dispose of the engine and its connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    async def __aenter__(self) -> StorageBase:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    @staticmethod
    def _model_to_row(model: BaseModel) -> dict[str, Any]:
        """Convert a model to a row dict (datetimes stay native)."""
        return model.model_dump(mode="python")

    @staticmethod
    def _row_to_model(row: Any, model_class: type[ModelT]) -> ModelT:
        """Convert a result row back to a model."""
        return model_class.model_validate(dict(row._mapping))
