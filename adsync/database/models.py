"""
Database Models - Document Tables

Each engine record is stored as its JSON document alongside the key and
filter columns that reads need:

- retrieval_sessions: one row per retrieval session
- timeline_points: one row per (account_id, ad_id, day), last write wins
- anomalies: insert-once anomaly records, status updated externally
- delivery_gaps: one row per gap, keyed by ad and start day
- cache_entries: persistent (L2) cache metadata
- performance_snapshots: one row per (account_id, stat_date)
"""

from datetime import date, datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Date, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
Document = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class RetrievalSessionRow(Base):
    __tablename__ = "retrieval_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), index=True)
    range_key: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), index=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime)
    document: Mapped[Dict[str, Any]] = mapped_column(Document)

    __table_args__ = (
        Index("ix_sessions_account_range", "account_id", "range_key"),
    )


class TimelinePointRow(Base):
    __tablename__ = "timeline_points"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    ad_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    day: Mapped[date] = mapped_column(Date, primary_key=True)
    has_delivery: Mapped[int] = mapped_column(Integer, default=0)
    document: Mapped[Dict[str, Any]] = mapped_column(Document)

    __table_args__ = (
        Index("ix_points_account_day", "account_id", "day"),
        Index("ix_points_ad_day", "ad_id", "day"),
    )


class AnomalyRow(Base):
    __tablename__ = "anomalies"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), index=True)
    ad_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    day: Mapped[date] = mapped_column(Date)
    document: Mapped[Dict[str, Any]] = mapped_column(Document)


class GapRow(Base):
    __tablename__ = "delivery_gaps"

    id: Mapped[str] = mapped_column(String(160), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), index=True)
    ad_id: Mapped[str] = mapped_column(String(64), index=True)
    start_date: Mapped[date] = mapped_column(Date)
    severity: Mapped[str] = mapped_column(String(16))
    document: Mapped[Dict[str, Any]] = mapped_column(Document)


class CacheEntryRow(Base):
    __tablename__ = "cache_entries"

    cache_key: Mapped[str] = mapped_column(String(160), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(64), index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)  # naive UTC
    document: Mapped[Dict[str, Any]] = mapped_column(Document)


class PerformanceSnapshotRow(Base):
    __tablename__ = "performance_snapshots"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stat_date: Mapped[date] = mapped_column(Date, primary_key=True)
    document: Mapped[Dict[str, Any]] = mapped_column(Document)
