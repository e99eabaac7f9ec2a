"""
Cursor store - durable per-source scan progress.
"""

from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chain_indexer.core.database import insert_or_ignore
from chain_indexer.core.exceptions import PersistenceError
from chain_indexer.indexer.core.types import SourceConfig, SourceKey
from chain_indexer.models.indexer_state import IndexerState


logger = structlog.get_logger(__name__)


def _matches(key: SourceKey):
    network_id, contract_address, schema_kind = key
    return and_(
        IndexerState.network_id == network_id,
        IndexerState.contract_address == contract_address,
        IndexerState.schema_kind == schema_kind,
    )


class CursorStore:
    """
    Reads and writes IndexerState rows.

    Each call runs in its own short transaction. Writes for one source are
    expected to come from that source's poller only.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.logger = logger.bind(service="cursor_store")

    async def ensure_cursor(self, config: SourceConfig) -> IndexerState:
        """Create the cursor for a source if absent; an existing cursor is never overwritten."""
        try:
            async with self.session_factory() as db:
                created_id = await insert_or_ignore(
                    db,
                    IndexerState,
                    {
                        "network_id": config.network_id,
                        "contract_address": config.contract_address,
                        "schema_kind": config.schema_kind.value,
                        "start_height": config.start_height,
                        "confirmations": config.confirmations,
                        "batch_size": config.batch_size,
                        "last_processed_height": config.start_height - 1,
                        "is_active": True,
                        "error_count": 0,
                    },
                    ["network_id", "contract_address", "schema_kind"]
                )
                await db.commit()

                result = await db.execute(select(IndexerState).where(_matches(config.key)))
                cursor = result.scalar_one()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to ensure cursor: {e}",
                {"source": config.label}
            ) from e

        if created_id is not None:
            self.logger.info(
                "Created cursor",
                source=config.label,
                last_processed_height=cursor.last_processed_height
            )
        return cursor

    async def get(self, key: SourceKey) -> Optional[IndexerState]:
        async with self.session_factory() as db:
            result = await db.execute(select(IndexerState).where(_matches(key)))
            return result.scalar_one_or_none()

    async def list_all(self) -> List[IndexerState]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(IndexerState).order_by(
                    IndexerState.network_id,
                    IndexerState.contract_address,
                    IndexerState.schema_kind
                )
            )
            return list(result.scalars().all())

    async def advance(self, key: SourceKey, to_height: int, at: datetime) -> bool:
        """
        Record a successful scan up to to_height.

        The height never moves backwards: if the stored height is already
        beyond to_height only the sync time and error state are updated.
        Returns True if the height itself moved.
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    update(IndexerState)
                    .where(_matches(key), IndexerState.last_processed_height < to_height)
                    .values(
                        last_processed_height=to_height,
                        last_sync_at=at,
                        error_count=0,
                        last_error=None,
                        last_error_at=None,
                    )
                )
                moved = result.rowcount == 1
                if not moved:
                    await db.execute(
                        update(IndexerState)
                        .where(_matches(key))
                        .values(
                            last_sync_at=at,
                            error_count=0,
                            last_error=None,
                            last_error_at=None,
                        )
                    )
                await db.commit()
                return moved
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to advance cursor: {e}", {"source": key}) from e

    async def touch(self, key: SourceKey, at: datetime) -> None:
        """Record a successful tick that had nothing new to scan."""
        async with self.session_factory() as db:
            await db.execute(
                update(IndexerState)
                .where(_matches(key))
                .values(last_sync_at=at, error_count=0, last_error=None, last_error_at=None)
            )
            await db.commit()

    async def record_error(self, key: SourceKey, message: str, at: datetime) -> None:
        """Count a failed tick; the height is left as is."""
        async with self.session_factory() as db:
            await db.execute(
                update(IndexerState)
                .where(_matches(key))
                .values(
                    error_count=IndexerState.error_count + 1,
                    last_error=message,
                    last_error_at=at,
                )
            )
            await db.commit()

    async def set_active(self, key: SourceKey, active: bool) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(IndexerState).where(_matches(key)).values(is_active=active)
            )
            await db.commit()
            return result.rowcount == 1
