"""
Gym Fusion Engine - Database Models

The store keeps the gym collection as an ordered list of opaque JSON
payloads. The engine decides what a record looks like; the table does not.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, Text, func
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class GymRecord(Base):
    """
    One gym in the persisted collection.

    `position` keeps the collection's order; `name` and `address` are copied
    out of the payload for lookups only.
    """

    __tablename__ = "gyms"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(Text, index=True)
    address: Mapped[Optional[str]] = mapped_column(Text)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_gyms_position", "position"),
    )

    def __repr__(self) -> str:
        return f"<GymRecord(#{self.position} {self.name})>"
