"""SQLAlchemy ORM models for the short-link service.

This module defines the authoritative tables: short links, redirect events
and rate-limit request records.

Data Model Layout
=================
::
    short_links table
    ├─ id (SERIAL PRIMARY KEY)
    ├─ code (VARCHAR(32) UNIQUE, INDEXED)         case-sensitive
    ├─ long_url (TEXT NOT NULL)
    ├─ custom_alias (VARCHAR(32) NULL)            as typed by the caller
    ├─ custom_alias_key (VARCHAR(32) UNIQUE NULL) lower-cased custom alias
    ├─ is_custom (BOOLEAN)
    ├─ topic (VARCHAR(64) NULL, INDEXED)
    ├─ owner_id (VARCHAR(128) NULL, INDEXED)
    └─ created_at (TIMESTAMPTZ)

    redirect_events table (append-only)
    ├─ id (SERIAL PRIMARY KEY)
    ├─ alias (VARCHAR(32), INDEXED)   joins short_links.code
    ├─ user_agent (TEXT NULL)
    ├─ source_ip (VARCHAR(64) NULL)
    ├─ geo (JSON NULL)                opaque to this service
    └─ occurred_at (TIMESTAMPTZ, INDEXED)

    request_records table (append-only)
    ├─ id (SERIAL PRIMARY KEY)
    ├─ identity (VARCHAR(128))
    └─ occurred_at (TIMESTAMPTZ)      (identity, occurred_at) INDEXED

Key Behaviours
===============
- Two custom aliases differing only by case collide on custom_alias_key,
  so the database rejects the loser of a concurrent custom-alias race.
- Rows are never updated or deleted by this service.
- Timestamps are assigned by the writing component's clock, not the server,
  so trailing-window queries and tests share one time source.
"""

import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shortlinks.database import Base

__all__ = ["RedirectEvent", "RequestRecord", "ShortLink", "utcnow"]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class ShortLink(Base):
    __tablename__ = "short_links"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    long_url: Mapped[str] = mapped_column(Text, nullable=False)
    custom_alias: Mapped[str | None] = mapped_column(String(32), nullable=True)
    custom_alias_key: Mapped[str | None] = mapped_column(String(32), unique=True, nullable=True)
    is_custom: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    topic: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    owner_id: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<ShortLink(code='{self.code}', is_custom={self.is_custom}, topic={self.topic!r})>"


class RedirectEvent(Base):
    __tablename__ = "redirect_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    alias: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    geo: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    occurred_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True, nullable=False
    )

    def __repr__(self) -> str:
        return f"<RedirectEvent(alias='{self.alias}', occurred_at={self.occurred_at})>"


class RequestRecord(Base):
    __tablename__ = "request_records"
    __table_args__ = (Index("ix_request_records_identity_occurred_at", "identity", "occurred_at"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    identity: Mapped[str] = mapped_column(String(128), nullable=False)
    occurred_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
