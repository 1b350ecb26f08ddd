"""SQLAlchemy ORM models backing the persistent feed cache."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class FeedCacheRecord(Base):
    """Last known items and hubs for a feed context."""

    __tablename__ = "feed_cache"

    context: Mapped[str] = mapped_column(String(255), primary_key=True)
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    hubs: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    total_items: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
