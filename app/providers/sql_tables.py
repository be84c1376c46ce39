"""
Row storage over SQLAlchemy with in-process change notifications
"""
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import DuplicateError, NotFoundError, ProviderError
from app.database import Base
from app.models.user import utcnow
from app.providers.base import (
    ListenerSet,
    RowChange,
    RowChangeType,
    Subscription,
    TableProvider,
)

logger = logging.getLogger(__name__)


class RowChangeBroker:
    """Fan-out of row changes to per-row subscribers"""

    def __init__(self):
        self._channels: Dict[Tuple[str, str], ListenerSet] = {}

    def subscribe(self, table: str, row_id: str, callback: Callable[[RowChange], Any]) -> Subscription:
        key = (table, row_id)
        channel = self._channels.setdefault(key, ListenerSet(f"{table}:{row_id}"))
        inner = channel.add(callback)

        def cancel():
            inner.unsubscribe()
            if not len(channel) and self._channels.get(key) is channel:
                del self._channels[key]

        return Subscription(cancel)

    def subscriber_count(self, table: str, row_id: str) -> int:
        channel = self._channels.get((table, row_id))
        return len(channel) if channel else 0

    async def publish(self, change: RowChange):
        channel = self._channels.get((change.table, change.row_id))
        if channel:
            await channel.emit(change)


class SQLTableProvider(TableProvider):
    """TableProvider backed by the application's own database"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession],
                 broker: Optional[RowChangeBroker] = None):
        self.session_factory = session_factory
        self.broker = broker or RowChangeBroker()

    def _table(self, name: str) -> Table:
        try:
            return Base.metadata.tables[name]
        except KeyError:
            raise NotFoundError(f"Unknown table: {name}")

    @staticmethod
    def _next_updated_at(previous) -> Any:
        # updated_at must strictly advance even if two writes share a clock tick
        now = utcnow()
        if previous is not None and now <= previous:
            return previous + timedelta(microseconds=1)
        return now

    async def fetch_row(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        tbl = self._table(table)
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(tbl).where(tbl.c.id == row_id))
                row = result.mappings().first()
        except SQLAlchemyError as e:
            logger.error(f"❌ [TABLES] fetch {table}/{row_id} failed: {e}")
            raise ProviderError("Could not load record") from e
        return dict(row) if row else None

    async def list_rows(self, table: str, order_by: str = "created_at",
                        descending: bool = True) -> List[Dict[str, Any]]:
        tbl = self._table(table)
        column = tbl.c[order_by]
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(tbl).order_by(column.desc() if descending else column.asc())
                )
                return [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as e:
            logger.error(f"❌ [TABLES] list {table} failed: {e}")
            raise ProviderError("Could not load records") from e

    async def insert_row(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        tbl = self._table(table)
        values = dict(row)
        now = utcnow()
        if "created_at" in tbl.c:
            values.setdefault("created_at", now)
        if "updated_at" in tbl.c:
            values.setdefault("updated_at", now)

        try:
            async with self.session_factory() as db:
                await db.execute(insert(tbl).values(**values))
                await db.commit()
                result = await db.execute(select(tbl).where(tbl.c.id == values["id"]))
                stored = dict(result.mappings().one())
        except IntegrityError as e:
            logger.warning(f"⚠️  [TABLES] insert into {table} rejected: {e.orig}")
            raise DuplicateError("Record already exists") from e
        except SQLAlchemyError as e:
            logger.error(f"❌ [TABLES] insert into {table} failed: {e}")
            raise ProviderError("Could not save record") from e

        await self.broker.publish(RowChange(table, stored["id"], RowChangeType.INSERT, new=stored))
        return stored

    async def update_row(self, table: str, row_id: str, patch: Dict[str, Any],
                         match: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        tbl = self._table(table)
        try:
            async with self.session_factory() as db:
                result = await db.execute(select(tbl).where(tbl.c.id == row_id))
                current = result.mappings().first()
                if current is None:
                    raise NotFoundError(f"{table} record not found")
                old = dict(current)

                values = dict(patch)
                if "updated_at" in tbl.c:
                    values["updated_at"] = self._next_updated_at(old.get("updated_at"))

                stmt = update(tbl).where(tbl.c.id == row_id).values(**values)
                for column, expected in (match or {}).items():
                    stmt = stmt.where(tbl.c[column] == expected)
                outcome = await db.execute(stmt)
                if outcome.rowcount == 0:
                    await db.rollback()
                    logger.info(f"[TABLES] conditional update of {table}/{row_id} matched nothing")
                    return None
                await db.commit()

                result = await db.execute(select(tbl).where(tbl.c.id == row_id))
                stored = dict(result.mappings().one())
        except SQLAlchemyError as e:
            logger.error(f"❌ [TABLES] update {table}/{row_id} failed: {e}")
            raise ProviderError("Could not update record") from e

        await self.broker.publish(RowChange(table, row_id, RowChangeType.UPDATE, new=stored, old=old))
        return stored

    async def delete_row(self, table: str, row_id: str) -> bool:
        tbl = self._table(table)
        try:
            async with self.session_factory() as db:
                outcome = await db.execute(delete(tbl).where(tbl.c.id == row_id))
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(f"❌ [TABLES] delete {table}/{row_id} failed: {e}")
            raise ProviderError("Could not delete record") from e

        deleted = outcome.rowcount > 0
        if deleted:
            await self.broker.publish(RowChange(table, row_id, RowChangeType.DELETE))
        return deleted

    def subscribe_to_row_change(self, table: str, row_id: str,
                                callback: Callable[[RowChange], Any]) -> Subscription:
        self._table(table)
        return self.broker.subscribe(table, row_id, callback)
