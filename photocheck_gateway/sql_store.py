"""SQL-backed record store (SQLAlchemy Core).

Conditional transitions compile to
``UPDATE images SET ... WHERE id = :id AND status IN (...)`` and the affected
row count decides which caller won. Blocking database calls run in worker
threads so the event loop keeps serving requests.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import DatabaseError, NotFoundError
from .records import (
    ALL_STATUSES,
    STATUS_ACCEPTED,
    BaseRecordStore,
    ExpectedStatus,
    ImageRecord,
    RecordTransaction,
    check_match_fields,
    check_update_fields,
    normalize_expected,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

metadata = MetaData()

images = Table(
    "images",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("key", String(512), nullable=False),
    Column("filename", String(255), nullable=False),
    Column("original_name", String(255), nullable=False),
    Column("mime_type", String(64), nullable=False),
    Column("file_size", Integer),
    Column("status", String(32), nullable=False, index=True),
    Column("verification_attempts", Integer, nullable=False, default=0),
    Column("verification_owner", String(64)),
    Column("last_verification_at", DateTime(timezone=True)),
    Column("upload_completed_at", DateTime(timezone=True)),
    Column("processed_at", DateTime(timezone=True)),
    Column("width", Integer),
    Column("height", Integer),
    Column("measured_size", Integer),
    Column("phash", String(128)),
    Column("blur_score", Float),
    Column("face_count", Integer),
    Column("face_size", Float),
    Column("rejection_reasons", JSON, nullable=False),
    Column("upload_url_expires_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


def _row_to_record(row: Any) -> ImageRecord:
    data = dict(row._mapping)
    data["rejection_reasons"] = list(data.get("rejection_reasons") or [])
    return ImageRecord(**data)


class _SqlTransaction:
    def __init__(self, conn: Connection):
        self._conn = conn

    def get(self, image_id: str) -> Optional[ImageRecord]:
        row = self._conn.execute(
            select(images).where(images.c.id == image_id).with_for_update()
        ).first()
        return _row_to_record(row) if row else None

    def create(self, record: ImageRecord) -> ImageRecord:
        if record.status not in ALL_STATUSES:
            raise ValueError(f"unknown status {record.status!r}")
        values = {name: getattr(record, name) for name in images.c.keys()}
        values["rejection_reasons"] = list(record.rejection_reasons)
        try:
            self._conn.execute(insert(images).values(**values))
        except IntegrityError as exc:
            raise DatabaseError("Image already exists", {"image_id": record.id}, retryable=False) from exc
        return record

    def update(self, image_id: str, **values: Any) -> ImageRecord:
        check_update_fields(values)
        values["updated_at"] = utcnow()
        result = self._conn.execute(update(images).where(images.c.id == image_id).values(**values))
        if result.rowcount == 0:
            raise NotFoundError("Image not found", {"image_id": image_id})
        record = self.get(image_id)
        if record is None:
            raise NotFoundError("Image vanished during update", {"image_id": image_id})
        return record

    def update_where(
        self,
        image_id: str,
        expected_status: ExpectedStatus,
        match: Optional[Dict[str, Any]] = None,
        **values: Any,
    ) -> int:
        check_update_fields(values)
        values["updated_at"] = utcnow()
        query = (
            update(images)
            .where(images.c.id == image_id)
            .where(images.c.status.in_(normalize_expected(expected_status)))
        )
        for name, value in check_match_fields(match).items():
            column = images.c[name]
            query = query.where(column.is_(None) if value is None else column == value)
        result = self._conn.execute(query.values(**values))
        return result.rowcount

    def list(self, status: Optional[str] = None) -> List[ImageRecord]:
        query = select(images).order_by(images.c.created_at.desc())
        if status is not None:
            query = query.where(images.c.status == status)
        return [_row_to_record(row) for row in self._conn.execute(query)]

    def accepted_hashes(self) -> List[str]:
        rows = self._conn.execute(
            select(images.c.phash).where(images.c.status == STATUS_ACCEPTED).where(images.c.phash.is_not(None))
        )
        return [row.phash for row in rows]


class SqlRecordStore(BaseRecordStore):
    def __init__(self, engine: Engine | str, create_tables: bool = True):
        self.engine = create_engine(engine) if isinstance(engine, str) else engine
        if create_tables:
            metadata.create_all(self.engine)

    def _run(self, fn: Callable[[RecordTransaction], T]) -> T:
        try:
            with self.engine.begin() as conn:
                return fn(_SqlTransaction(conn))
        except SQLAlchemyError as exc:
            logger.error(f"Record store error: {exc}")
            raise DatabaseError(str(exc), {"original_error": type(exc).__name__}) from exc

    async def transaction(self, fn: Callable[[RecordTransaction], T]) -> T:
        return await asyncio.to_thread(self._run, fn)

    def dispose(self) -> None:
        self.engine.dispose()
