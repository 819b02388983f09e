"""SQLAlchemy ORM models for the durable link store.

This module defines the relational schema: the link table that maps short
codes to destinations, and the click audit table the ingestion worker appends
to in bulk.

Data Model Layout
=================
::
    links table
    ├─ id (SERIAL PRIMARY KEY)
    ├─ short_code (VARCHAR(32) UNIQUE, INDEXED)
    ├─ destination_url (TEXT NOT NULL)
    └─ created_at (TIMESTAMPTZ, DEFAULT NOW())

    link_analytics table
    ├─ id (BIGSERIAL PRIMARY KEY)
    ├─ event_id (UUID UNIQUE)          ← idempotency key for redelivered events
    ├─ short_code (VARCHAR(32), INDEXED)
    ├─ ip_address (VARCHAR(64))
    ├─ user_agent (TEXT)
    └─ clicked_at (TIMESTAMPTZ)

How to Use
===========
**Step 1 — Import**::
    from linkapp.models import Link, LinkAnalytics

**Step 2 — Query a destination**::
    result = await db.execute(select(Link.destination_url).where(Link.short_code == "abc123"))
    destination = result.scalar_one_or_none()

Key Behaviours
===============
- Link rows are created by an admin/seeding path; the core only reads them.
- link_analytics rows are insert-only; duplicates are rejected on event_id.
- link_analytics is an audit log, not an aggregation source; stats are served
  from the analytics store.

Classes:
    Link:  A short code and its destination URL.
    LinkAnalytics:  One recorded visit.
"""

import datetime
import uuid

from sqlalchemy import BigInteger, DateTime, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from linkapp.database import Base

__all__ = ["Link", "LinkAnalytics"]


class Link(Base):
    __tablename__ = "links"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    short_code: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    destination_url: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<Link(id={self.id}, short_code='{self.short_code}')>"


class LinkAnalytics(Base):
    __tablename__ = "link_analytics"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    short_code: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str] = mapped_column(Text, nullable=False)
    clicked_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<LinkAnalytics(event_id={self.event_id}, short_code='{self.short_code}')>"
