"""SQLAlchemy models and session factory for the record store."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from tender_boq.config import DatabaseConfig, config
from tender_boq.schemas import TenderStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Tender(Base):
    """One uploaded document and its processing record."""

    __tablename__ = "tenders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    file_name: Mapped[str] = mapped_column(String, nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    mime_type: Mapped[str] = mapped_column(String, nullable=False)
    extracted_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extraction_context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=TenderStatus.PROCESSING.value
    )  # processing | pending_review | completed | rejected
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    # Relationships
    items: Mapped[List["BOQItemRecord"]] = relationship(
        "BOQItemRecord",
        back_populates="tender",
        cascade="all, delete-orphan",
        order_by="BOQItemRecord.position",
    )
    review_logs: Mapped[List["ReviewLog"]] = relationship(
        "ReviewLog",
        back_populates="tender",
        cascade="all, delete-orphan",
        order_by="ReviewLog.id",
    )


class BOQItemRecord(Base):
    """One BOQ line. Replaced wholesale on edit, never patched."""

    __tablename__ = "boq_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tender_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tenders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # Order the items were supplied in; item numbers don't sort reliably.
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    item_number: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String, nullable=False)
    unit_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    tender: Mapped["Tender"] = relationship("Tender", back_populates="items")


class ReviewLog(Base):
    """Append-only audit entry. The autoincrement id doubles as log order."""

    __tablename__ = "review_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tender_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("tenders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(
        String(32), nullable=False, index=True
    )  # approved | rejected | edited | items_updated
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    tender: Mapped["Tender"] = relationship("Tender", back_populates="review_logs")


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_session_factory(database: Optional[DatabaseConfig] = None) -> sessionmaker:
    """
    Build an engine for the configured URL, create missing tables, and
    return a session factory.

    In-memory SQLite ("sqlite://") gets a StaticPool so every session sees
    the same database; that is what the tests run on.
    """
    database = database or config.database
    kwargs = {}
    if database.url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database.url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(database.url, echo=database.echo, **kwargs)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_foreign_keys(engine)

    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
