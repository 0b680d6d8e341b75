"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Both tables share one shape:
  - subject_id  primary key
  - payload     the record envelope as JSON text (same bytes the file
                backend writes, so records move between backends unchanged)
  - updated_at  epoch-ms of the last save, indexed; the sweep deletes
                WHERE updated_at < cutoff
"""
from __future__ import annotations

from sqlalchemy import BigInteger, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


class _RecordColumns:
    subject_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, index=True, nullable=False)


# ──────────────────────────────────────────────────────────────
#  Paused execution state (approval-pending window)
# ──────────────────────────────────────────────────────────────

class RunStateRow(_RecordColumns, Base):
    __tablename__ = "conversation_run_states"


# ──────────────────────────────────────────────────────────────
#  Customer context (continuity window)
# ──────────────────────────────────────────────────────────────

class ContextRow(_RecordColumns, Base):
    __tablename__ = "customer_contexts"
