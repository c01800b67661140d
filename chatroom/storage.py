"""Persisted message collection.

``MessageCollection`` is the only writer of the ``messages`` table. It
exposes exactly five operations (read_all, read_one, create, update,
delete) which the sync hub and the HTTP routes build on.

Every call opens its own session from a shared engine, so the collection
can be used from several threads at once. Nothing is cached in memory:
each read goes to the database.
"""

import logging
import threading
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import create_engine, delete, inspect, select, text, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .errors import (
    DeleteFailed,
    IdentifierRetrievalFailed,
    InsertFailed,
    NotFound,
    QueryFailed,
    StorageUnavailable,
    UpdateFailed,
)
from .logging_utils import log_event
from .metrics import inc_collection_operation
from .models import EXPECTED_COLUMNS, Base, MessageRow
from .schemas import Message


def _engine_connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        # shared across threads; wait on a locked database instead of failing
        return {"check_same_thread": False, "timeout": 15}
    return {}


def _ensure_sqlite_parent(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return
    database = parsed.database
    if not database or database == ":memory:" or database.startswith("file:"):
        return
    Path(database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)


class MessageCollection:
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._schema_lock = threading.Lock()
        self._schema_ready = False

    # ---------- lifecycle ----------

    def open(self) -> "MessageCollection":
        """Open (creating if absent) the store and ensure its schema.

        Raises StorageUnavailable; the owning process should not continue.
        """
        if self._engine is not None:
            return self
        try:
            _ensure_sqlite_parent(self.database_url)
            self._engine = create_engine(
                self.database_url,
                connect_args=_engine_connect_args(self.database_url),
            )
        except (OSError, SQLAlchemyError, ValueError) as e:
            log_event(logging.CRITICAL, "storage_unavailable", operation="open", error=str(e))
            raise StorageUnavailable("open", e) from e
        self._session_factory = sessionmaker(bind=self._engine, autoflush=False, autocommit=False)
        try:
            self.ensure_schema()
        except StorageUnavailable:
            self.close()
            raise
        log_event(logging.INFO, "storage_opened", url=self._engine.url.render_as_string(hide_password=True))
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None
        self._schema_ready = False

    def __enter__(self) -> "MessageCollection":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise StorageUnavailable("engine", detail="collection is not open")
        return self._engine

    def ensure_schema(self) -> None:
        """Create the messages table if missing and check its columns.

        Safe to call any number of times; only the first successful call
        does any work.
        """
        with self._schema_lock:
            if self._schema_ready:
                return
            engine = self.engine
            try:
                if not inspect(engine).has_table(MessageRow.__tablename__):
                    Base.metadata.create_all(bind=engine, checkfirst=True)
                    log_event(logging.INFO, "schema_created", table=MessageRow.__tablename__)
                columns = {c["name"] for c in inspect(engine).get_columns(MessageRow.__tablename__)}
            except SQLAlchemyError as e:
                log_event(logging.CRITICAL, "storage_unavailable", operation="ensure_schema", error=str(e))
                raise StorageUnavailable("ensure_schema", e) from e
            if columns != EXPECTED_COLUMNS:
                detail = f"table {MessageRow.__tablename__!r} has columns {sorted(columns)}, expected {sorted(EXPECTED_COLUMNS)}"
                log_event(logging.CRITICAL, "storage_unavailable", operation="ensure_schema", error=detail)
                raise StorageUnavailable("ensure_schema", detail=detail)
            self._schema_ready = True

    def ping(self) -> None:
        try:
            with self._session() as db:
                db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            raise QueryFailed("ping", e) from e

    def _session(self) -> Session:
        if self._session_factory is None:
            raise StorageUnavailable("session", detail="collection is not open")
        return self._session_factory()

    # ---------- operations ----------

    def read_all(self) -> List[Message]:
        try:
            with self._session() as db:
                rows = db.scalars(select(MessageRow).order_by(MessageRow.id.asc())).all()
                messages = [_to_entity("read_all", row) for row in rows]
        except (SQLAlchemyError, ValueError) as e:
            self._failed("read_all", e)
            raise QueryFailed("read_all", e) from e
        except QueryFailed as e:
            self._failed("read_all", e)
            raise
        inc_collection_operation("read_all", "ok")
        return messages

    def read_one(self, message_id: int) -> Message:
        try:
            with self._session() as db:
                row = db.get(MessageRow, message_id)
                if row is None:
                    raise NotFound("read_one", message_id)
                message = _to_entity("read_one", row)
        except (SQLAlchemyError, ValueError) as e:
            self._failed("read_one", e)
            raise QueryFailed("read_one", e) from e
        except NotFound:
            inc_collection_operation("read_one", "not_found")
            raise
        except QueryFailed as e:
            self._failed("read_one", e)
            raise
        inc_collection_operation("read_one", "ok")
        return message

    def create(self, candidate: Message) -> Message:
        """Persist ``candidate`` and return it with the assigned id.

        Any id on the candidate is ignored. The insert and the id lookup
        share one transaction; if either fails nothing is committed.
        """
        row = MessageRow(
            sender=candidate.sender,
            sent_time=candidate.sent_time,
            text=candidate.text,
        )
        with self._session() as db:
            try:
                db.add(row)
                db.flush()
            except SQLAlchemyError as e:
                db.rollback()
                self._failed("create", e)
                raise InsertFailed("create", e) from e

            new_id = row.id
            if new_id is None:
                db.rollback()
                err = IdentifierRetrievalFailed("create", detail="storage did not assign an id")
                self._failed("create", err)
                raise err

            try:
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                self._failed("create", e)
                raise InsertFailed("create", e) from e

        inc_collection_operation("create", "ok")
        log_event(logging.DEBUG, "message_created", id=new_id, sender=candidate.sender)
        return candidate.model_copy(update={"id": new_id})

    def update(self, message: Message) -> None:
        """Overwrite the text of the message with ``message.id``.

        Sender and sent time are never touched. Updating an id that does
        not exist is a no-op and not an error.
        """
        if message.id is None:
            raise UpdateFailed("update", detail="message has no id")
        stmt = update(MessageRow).where(MessageRow.id == message.id).values(text=message.text)
        with self._session() as db:
            try:
                result = db.execute(stmt)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                self._failed("update", e)
                raise UpdateFailed("update", e) from e
        if result.rowcount == 0:
            log_event(logging.DEBUG, "update_missing_id", id=message.id)
            inc_collection_operation("update", "noop")
        else:
            inc_collection_operation("update", "ok")

    def delete(self, message_id: int) -> None:
        """Remove the message. Deleting a missing id is a no-op."""
        stmt = delete(MessageRow).where(MessageRow.id == message_id)
        with self._session() as db:
            try:
                result = db.execute(stmt)
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                self._failed("delete", e)
                raise DeleteFailed("delete", e) from e
        if result.rowcount == 0:
            log_event(logging.DEBUG, "delete_missing_id", id=message_id)
            inc_collection_operation("delete", "noop")
        else:
            inc_collection_operation("delete", "ok")

    def _failed(self, operation: str, error: BaseException) -> None:
        inc_collection_operation(operation, "error")
        log_event(logging.ERROR, "collection_error", operation=operation, error=str(error))


def _to_entity(operation: str, row: MessageRow) -> Message:
    try:
        return Message.model_validate(row)
    except ValidationError as e:
        raise QueryFailed(operation, e) from e
