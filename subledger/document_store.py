from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Mapping, Protocol, TypeVar

from pydantic_core import to_jsonable_python
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

T = TypeVar("T")

metadata = MetaData()

documents = Table(
    "documents",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("collection", String(100), nullable=False),
    Column("doc_id", String(255), nullable=False),
    Column("body", JSON, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("collection", "doc_id", name="uq_documents_collection_doc_id"),
)


@dataclass(frozen=True)
class Document:
    id: str
    data: dict[str, Any] = field(default_factory=dict)


class DocumentReader(Protocol):
    async def get_all(self, collection: str) -> List[Document]:
        ...

    async def query(self, collection: str, filters: Mapping[str, Any]) -> List[Document]:
        ...

    async def get_by_id(self, collection: str, doc_id: str) -> Document | None:
        ...


class DocumentStore(DocumentReader, Protocol):
    async def put(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> Document:
        ...

    async def delete(self, collection: str, doc_id: str) -> bool:
        ...

    async def transactional_read_write(
        self, fn: Callable[["DocumentTransaction"], Awaitable[T]]
    ) -> T:
        ...


class DocumentTransaction:
    """Reads and writes bound to one open database transaction."""

    def __init__(self, conn: AsyncConnection) -> None:
        self.conn = conn

    async def get_all(self, collection: str) -> List[Document]:
        result = await self.conn.execute(
            select(documents.c.doc_id, documents.c.body)
            .where(documents.c.collection == collection)
            .order_by(documents.c.doc_id.asc())
        )
        return [Document(id=row["doc_id"], data=dict(row["body"])) for row in result.mappings()]

    async def query(self, collection: str, filters: Mapping[str, Any]) -> List[Document]:
        expected = to_jsonable_python(dict(filters))
        return [
            doc
            for doc in await self.get_all(collection)
            if all(doc.data.get(key) == value for key, value in expected.items())
        ]

    async def get_by_id(self, collection: str, doc_id: str) -> Document | None:
        result = await self.conn.execute(
            select(documents.c.body).where(
                documents.c.collection == collection, documents.c.doc_id == doc_id
            )
        )
        body = result.scalar_one_or_none()
        if body is None:
            return None
        return Document(id=doc_id, data=dict(body))

    async def put(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> Document:
        body = to_jsonable_python(dict(data))
        now = datetime.now(timezone.utc)
        result = await self.conn.execute(
            update(documents)
            .where(documents.c.collection == collection, documents.c.doc_id == doc_id)
            .values(body=body, updated_at=now)
        )
        if result.rowcount == 0:
            await self.conn.execute(
                insert(documents).values(
                    collection=collection, doc_id=doc_id, body=body, updated_at=now
                )
            )
        return Document(id=doc_id, data=body)

    async def merge(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> Document:
        existing = await self.get_by_id(collection, doc_id)
        body = dict(existing.data) if existing else {}
        body.update(to_jsonable_python(dict(fields)))
        return await self.put(collection, doc_id, body)

    async def delete(self, collection: str, doc_id: str) -> bool:
        result = await self.conn.execute(
            delete(documents).where(
                documents.c.collection == collection, documents.c.doc_id == doc_id
            )
        )
        return result.rowcount > 0


class SqlDocumentStore:
    """Document collections persisted as JSON rows through SQLAlchemy's asyncio engine."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "SqlDocumentStore":
        return cls(create_async_engine(database_url))

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def transactional_read_write(
        self, fn: Callable[[DocumentTransaction], Awaitable[T]]
    ) -> T:
        async with self.engine.begin() as conn:
            return await fn(DocumentTransaction(conn))

    async def get_all(self, collection: str) -> List[Document]:
        return await self.transactional_read_write(lambda txn: txn.get_all(collection))

    async def query(self, collection: str, filters: Mapping[str, Any]) -> List[Document]:
        return await self.transactional_read_write(lambda txn: txn.query(collection, filters))

    async def get_by_id(self, collection: str, doc_id: str) -> Document | None:
        return await self.transactional_read_write(lambda txn: txn.get_by_id(collection, doc_id))

    async def put(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> Document:
        return await self.transactional_read_write(lambda txn: txn.put(collection, doc_id, data))

    async def merge(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> Document:
        return await self.transactional_read_write(lambda txn: txn.merge(collection, doc_id, fields))

    async def delete(self, collection: str, doc_id: str) -> bool:
        deleted = await self.transactional_read_write(lambda txn: txn.delete(collection, doc_id))
        if not deleted:
            logger.debug("Delete of missing document %s/%s", collection, doc_id)
        return deleted
