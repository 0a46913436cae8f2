"""Parcel and payment-ledger adapters over the SQLAlchemy async engine.

Every operation runs in its own short session and commits before returning,
so each call is durable on its own. Point-lookup misses come back as ``None``
and write results as small result objects; only driver failures raise.
"""
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Generic, Iterable, Sequence, TypeVar

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from zapshift.errors import InvalidInput, StoreUnavailable
from zapshift.models import Parcel, PaymentRecord, new_id
from zapshift.schemas import DeleteResult, InsertResult, UpdateResult

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT")

_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def validate_id(value: str) -> str:
    """Reject identifiers that could not have been assigned by the store."""
    if not _ID_PATTERN.match(value or ""):
        raise InvalidInput(f"Malformed identifier: {value!r}")
    return value


class DocumentStore(Generic[ModelT]):
    model: type

    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("store_unavailable", table=self.model.__tablename__, error=str(exc))
            raise StoreUnavailable(f"{self.model.__tablename__} store unavailable") from exc

    def _column(self, field: str):
        column = getattr(self.model, field, None)
        if column is None:
            raise InvalidInput(f"Unknown field: {field}")
        return column

    async def find_by_id(self, id: str) -> ModelT | None:
        async with self._session() as session:
            return await session.get(self.model, id)

    async def find_many(
        self,
        filters: dict[str, Any] | None = None,
        sort: Iterable[tuple[str, int]] = (),
    ) -> Sequence[ModelT]:
        stmt = select(self.model)
        for field, value in (filters or {}).items():
            stmt = stmt.where(self._column(field) == value)
        for field, direction in sort:
            column = self._column(field)
            stmt = stmt.order_by(column.desc() if direction < 0 else column.asc())
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.scalars().all()

    async def insert_one(self, instance: ModelT) -> InsertResult:
        if instance.id is None:
            instance.id = new_id()
        async with self._session() as session:
            session.add(instance)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.warning(
                    "insert_constraint_violation",
                    table=self.model.__tablename__,
                    error=str(exc.orig),
                )
                return InsertResult(duplicate=True)
        return InsertResult(inserted_id=instance.id)

    async def update_one(self, id: str, fields: dict[str, Any]) -> UpdateResult:
        stmt = update(self.model).where(self.model.id == id).values(**fields)
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        # SQL reports matched rows; every matched row receives the new values.
        return UpdateResult(matched_count=result.rowcount, modified_count=result.rowcount)

    async def delete_one(self, id: str) -> DeleteResult:
        stmt = delete(self.model).where(self.model.id == id)
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
        return DeleteResult(deleted_count=result.rowcount)


class ParcelStore(DocumentStore[Parcel]):
    model = Parcel


class PaymentLedger(DocumentStore[PaymentRecord]):
    model = PaymentRecord

    async def find_by_transaction(self, transaction_id: str) -> PaymentRecord | None:
        stmt = select(PaymentRecord).where(PaymentRecord.transaction_id == transaction_id)
        async with self._session() as session:
            result = await session.execute(stmt)
            return result.scalars().first()
