"""
Database client used by the dbConnect / dbQuery / dbDisconnect handlers.

One DbClient owns one SQLAlchemy async engine. The client object itself is
what gets stored in the run context's connection table, so run cleanup can
dispose it without knowing which handler opened it.
"""

import asyncio
import time
from typing import Any, Optional, Sequence, Union

import structlog
from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import get_settings
from core.exceptions import ConfigurationError, OperationError

logger = structlog.get_logger(__name__)

DB_TYPES = ("sqlite", "postgres")

_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgres": "postgresql+asyncpg",
}


def build_url(config: dict[str, Any]) -> URL:
    """Build a SQLAlchemy URL from dbConnect-style config.

    ``connectionString`` wins over the individual fields.
    """
    connection_string = config.get("connectionString")
    if connection_string:
        try:
            return make_url(connection_string)
        except ArgumentError as e:
            raise ConfigurationError(f"Invalid connection string: {e}") from e

    db_type = config.get("dbType")
    if db_type not in DB_TYPES:
        raise ConfigurationError(
            f'Unsupported database type "{db_type}". Supported: {", ".join(DB_TYPES)}'
        )

    if db_type == "sqlite":
        file_path = config.get("filePath") or config.get("database") or ":memory:"
        return URL.create(_DRIVERS["sqlite"], database=file_path)

    port = config.get("port")
    return URL.create(
        _DRIVERS[db_type],
        username=config.get("user"),
        password=config.get("password"),
        host=config.get("host") or "localhost",
        port=int(port) if port else None,
        database=config.get("database"),
    )


class DbClient:
    """Async SQL client over a single engine."""

    def __init__(self, url: Union[str, URL], **engine_options: Any):
        self.url = make_url(url) if isinstance(url, str) else url
        self._engine_options = engine_options
        self._engine: Optional[AsyncEngine] = None

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "DbClient":
        return cls(build_url(config), **(config.get("options") or {}))

    @property
    def connected(self) -> bool:
        return self._engine is not None

    async def connect(self) -> None:
        """Create the engine and check the database answers."""
        settings = get_settings()
        options = {"echo": settings.SQLALCHEMY_ECHO, **self._engine_options}
        # An in-memory sqlite database lives only as long as its connection
        if self.url.get_backend_name() == "sqlite" and self.url.database in (None, "", ":memory:"):
            options.setdefault("poolclass", StaticPool)

        try:
            self._engine = create_async_engine(self.url, **options)
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except ArgumentError as e:
            await self.disconnect()
            raise ConfigurationError(f"Invalid database options: {e}") from e
        except (SQLAlchemyError, OSError) as e:
            await self.disconnect()
            raise OperationError(f"Failed to connect to database: {e}", 502) from e

        logger.info("Database connected", backend=self.url.get_backend_name(), database=self.url.database)

    async def execute(
        self,
        query: str,
        params: Optional[Union[dict[str, Any], Sequence[Any]]] = None,
        timeout_ms: Optional[float] = None,
    ) -> dict[str, Any]:
        """Run one statement.

        Named params (dict) bind through ``text()``; positional params (list)
        go to the driver as-is, in the driver's own placeholder style.

        Returns ``{rows, rowCount, columns, duration, timestamp}``.
        """
        if self._engine is None:
            raise OperationError("Database connection is not open")
        if not query or not str(query).strip():
            raise ConfigurationError("Query is required")

        started = time.monotonic()
        timestamp = int(time.time() * 1000)

        async def _run() -> dict[str, Any]:
            async with self._engine.begin() as conn:
                if isinstance(params, (list, tuple)):
                    result = await conn.exec_driver_sql(query, tuple(params))
                else:
                    result = await conn.execute(text(query), params or {})
                if result.returns_rows:
                    columns = list(result.keys())
                    rows = [dict(row._mapping) for row in result]
                    return {"rows": rows, "rowCount": len(rows), "columns": columns}
                return {"rows": [], "rowCount": result.rowcount, "columns": []}

        try:
            if timeout_ms:
                outcome = await asyncio.wait_for(_run(), timeout=timeout_ms / 1000)
            else:
                outcome = await _run()
        except asyncio.TimeoutError:
            raise OperationError(f"Query timed out after {int(timeout_ms)}ms", 504)
        except SQLAlchemyError as e:
            raise OperationError(f"Query failed: {e}") from e

        outcome["duration"] = round((time.monotonic() - started) * 1000, 2)
        outcome["timestamp"] = timestamp
        logger.debug("Query executed", row_count=outcome["rowCount"], duration_ms=outcome["duration"])
        return outcome

    async def disconnect(self) -> None:
        if self._engine is not None:
            engine, self._engine = self._engine, None
            await engine.dispose()
            logger.info("Database disconnected", backend=self.url.get_backend_name())
