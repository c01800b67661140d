from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base
from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.types import TypeDecorator

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Stores datetimes as naive UTC and hands them back timezone-aware."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class MessageRow(Base):
    __tablename__ = "messages"
    # AUTOINCREMENT keeps SQLite from reusing ids of deleted rows
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender = Column(String, nullable=False)
    sent_time = Column(UTCDateTime, nullable=False)
    text = Column(Text, nullable=False)


EXPECTED_COLUMNS = frozenset(c.name for c in MessageRow.__table__.columns)
