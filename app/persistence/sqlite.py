import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from sqlite3 import Error as SqliteError
from uuid import UUID

from aiosqlite import Connection, connect as sqlite_connect
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor
from pydantic import TypeAdapter, ValidationError

from app.helpers.config_models.database import SqliteModel
from app.helpers.logging import logger
from app.models.block import QuietBlockStateModel
from app.models.error import StoreUnavailableError
from app.models.readiness import ReadinessEnum
from app.persistence.istore import IStore

# Instrument sqlite
SQLite3Instrumentor().instrument()

_datetime_adapter = TypeAdapter(datetime)


class SqliteStore(IStore):
    """
    Store the blocks as JSON documents in a SQLite table.

    Conditional updates are single `UPDATE ... WHERE` statements, SQLite serializes them, so the row count tells if the condition matched.
    """

    _config: SqliteModel
    _initialized: bool = False

    def __init__(self, config: SqliteModel):
        logger.info(
            "Using SQLite database at %s with table %s",
            config.full_path(),
            config.table,
        )
        self._config = config

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the SQLite database.

        This checks if the database is reachable and can be queried.
        """
        try:
            async with self._use_db() as db:
                await db.execute("SELECT 1")
            return ReadinessEnum.OK
        except SqliteError:
            logger.exception("Error requesting SQLite")
        except Exception:
            logger.exception("Unknown error while checking SQLite readiness")
        return ReadinessEnum.FAIL

    async def block_get(
        self,
        block_id: UUID,
    ) -> QuietBlockStateModel | None:
        logger.debug("Loading block %s", block_id)
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.table} WHERE id = ?",
                (str(block_id),),
            )
            row = await cursor.fetchone()
        if not row:
            return None
        try:
            return QuietBlockStateModel.model_validate_json(row[0])
        except ValidationError as e:
            logger.debug("Parsing error: %s", e.errors())
        return None

    async def block_create(
        self,
        block: QuietBlockStateModel,
    ) -> QuietBlockStateModel:
        logger.debug("Creating new block %s", block.block_id)
        async with self._use_db() as db:
            await db.execute(
                f"INSERT INTO {self._config.table} (id, data) VALUES (?, ?)",
                (
                    str(block.block_id),  # id
                    block.model_dump_json(),  # data
                ),
            )
            await db.commit()
        return block

    async def block_update(
        self,
        block: QuietBlockStateModel,
    ) -> QuietBlockStateModel | None:
        logger.debug("Updating block %s", block.block_id)
        data = block.model_dump(mode="json")
        async with self._use_db() as db:
            cursor = await db.execute(
                f"""
                UPDATE {self._config.table}
                SET data = JSON_SET(data, '$.description', ?, '$.end', ?, '$.start', ?, '$.updated_at', ?)
                WHERE id = ? AND JSON_EXTRACT(data, '$.owner_id') = ?
                """,
                (
                    data["description"],
                    data["end"],
                    data["start"],
                    data["updated_at"],
                    str(block.block_id),
                    block.owner_id,
                ),
            )
            await db.commit()
            updated = cursor.rowcount > 0
        if not updated:
            return None
        return await self.block_get(block.block_id)

    async def block_delete(
        self,
        block_id: UUID,
        owner_id: str,
    ) -> bool:
        logger.debug("Deleting block %s", block_id)
        async with self._use_db() as db:
            cursor = await db.execute(
                f"DELETE FROM {self._config.table} WHERE id = ? AND JSON_EXTRACT(data, '$.owner_id') = ?",
                (str(block_id), owner_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def block_search_all(
        self,
        owner_id: str,
    ) -> list[QuietBlockStateModel]:
        logger.debug("Searching blocks for %s", owner_id)
        async with self._use_db() as db:
            cursor = await db.execute(
                f"""
                SELECT data FROM {self._config.table}
                WHERE JSON_EXTRACT(data, '$.owner_id') = ?
                ORDER BY JULIANDAY(JSON_EXTRACT(data, '$.start')) ASC, id ASC
                """,
                (owner_id,),
            )
            rows = await cursor.fetchall()
        return self._parse_rows(rows)

    async def block_search_overlap(
        self,
        owner_id: str,
        start: datetime,
        end: datetime,
        exclude_id: UUID | None = None,
    ) -> QuietBlockStateModel | None:
        async with self._use_db() as db:
            cursor = await db.execute(
                f"""
                SELECT data FROM {self._config.table}
                WHERE JSON_EXTRACT(data, '$.owner_id') = ?
                    AND id != ?
                    AND JULIANDAY(JSON_EXTRACT(data, '$.start')) < JULIANDAY(?)
                    AND JULIANDAY(JSON_EXTRACT(data, '$.end')) > JULIANDAY(?)
                ORDER BY JULIANDAY(JSON_EXTRACT(data, '$.start')) ASC
                LIMIT 1
                """,
                (
                    owner_id,
                    str(exclude_id) if exclude_id else "",
                    self._dump_datetime(end),
                    self._dump_datetime(start),
                ),
            )
            rows = await cursor.fetchall()
        blocks = self._parse_rows(rows)
        return blocks[0] if blocks else None

    async def block_list_not_notified(self) -> list[QuietBlockStateModel]:
        try:
            async with self._use_db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT data FROM {self._config.table}
                    WHERE JSON_EXTRACT(data, '$.notified') = 0
                    ORDER BY JULIANDAY(JSON_EXTRACT(data, '$.start')) ASC, id ASC
                    """
                )
                rows = await cursor.fetchall()
        except SqliteError as e:
            raise StoreUnavailableError("SQLite cannot be queried") from e
        return self._parse_rows(rows)

    async def block_try_claim(
        self,
        block: QuietBlockStateModel,
        claim_id: UUID,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        async with self._use_db() as db:
            cursor = await db.execute(
                f"""
                UPDATE {self._config.table}
                SET data = JSON_SET(data, '$.claim_id', ?, '$.claim_expires_at', ?)
                WHERE id = ?
                    AND JSON_EXTRACT(data, '$.notified') = 0
                    AND (
                        JSON_EXTRACT(data, '$.claim_expires_at') IS NULL
                        OR JULIANDAY(JSON_EXTRACT(data, '$.claim_expires_at')) <= JULIANDAY(?)
                    )
                """,
                (
                    str(claim_id),
                    self._dump_datetime(expires_at),
                    str(block.block_id),
                    self._dump_datetime(now),
                ),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def block_release_claim(
        self,
        block: QuietBlockStateModel,
        claim_id: UUID,
    ) -> bool:
        async with self._use_db() as db:
            cursor = await db.execute(
                f"""
                UPDATE {self._config.table}
                SET data = JSON_SET(data, '$.claim_id', NULL, '$.claim_expires_at', NULL)
                WHERE id = ? AND JSON_EXTRACT(data, '$.claim_id') = ?
                """,
                (str(block.block_id), str(claim_id)),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def block_try_mark_notified(
        self,
        block: QuietBlockStateModel,
        claim_id: UUID,
    ) -> bool:
        async with self._use_db() as db:
            cursor = await db.execute(
                f"""
                UPDATE {self._config.table}
                SET data = JSON_SET(
                    data,
                    '$.notified', JSON('true'),
                    '$.claim_id', NULL,
                    '$.claim_expires_at', NULL,
                    '$.updated_at', STRFTIME('%Y-%m-%dT%H:%M:%fZ', 'now')
                )
                WHERE id = ?
                    AND JSON_EXTRACT(data, '$.notified') = 0
                    AND JSON_EXTRACT(data, '$.claim_id') = ?
                """,
                (str(block.block_id), str(claim_id)),
            )
            await db.commit()
            return cursor.rowcount > 0

    def _parse_rows(self, rows) -> list[QuietBlockStateModel]:
        blocks: list[QuietBlockStateModel] = []
        for row in rows:
            if not row:
                continue
            try:
                blocks.append(QuietBlockStateModel.model_validate_json(row[0]))
            except ValidationError as e:
                logger.debug("Parsing error: %s", e.errors())
        return blocks

    @staticmethod
    def _dump_datetime(value: datetime) -> str:
        """
        Serialize a datetime the same way Pydantic does in the stored documents.
        """
        return _datetime_adapter.dump_python(value, mode="json")

    async def _init_db(self, db: Connection) -> None:
        """
        Initialize the database.

        See: https://sqlite.org/wal.html
        """
        logger.debug("Initializing database %s", self._config.full_path())
        # Optimize performance for concurrent writes
        await db.execute("PRAGMA journal_mode=WAL")
        # Create table
        await db.execute(
            f"CREATE TABLE IF NOT EXISTS {self._config.table} (id VARCHAR(36) PRIMARY KEY, data TEXT)"
        )
        # Create indexes
        await db.execute(
            f"CREATE INDEX IF NOT EXISTS {self._config.table}_data_owner_id ON {self._config.table} (JSON_EXTRACT(data, '$.owner_id'))"
        )
        await db.execute(
            f"CREATE INDEX IF NOT EXISTS {self._config.table}_data_notified ON {self._config.table} (JSON_EXTRACT(data, '$.notified'))"
        )
        # Write changes to disk
        await db.commit()

    @asynccontextmanager
    async def _use_db(self) -> AsyncGenerator[Connection, None]:
        """
        Generate the SQLite client and close it after use.
        """
        # Create folder
        db_path = self._config.full_path()
        db_folder = os.path.dirname(db_path)
        if db_folder:
            os.makedirs(name=db_folder, exist_ok=True)

        # Connect to DB
        async with sqlite_connect(database=db_path, timeout=10) as db:
            # Schema creation is idempotent, run it once per instance
            if not self._initialized:
                await self._init_db(db)
                self._initialized = True
            yield db
