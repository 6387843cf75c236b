"""SQLAlchemy models for follow relationships in both directions."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from herald.db.session import Base
from herald.db.time import utcnow

FOLLOW_PENDING = "pending"
FOLLOW_ACCEPTED = "accepted"
FOLLOW_FAILED = "failed"


class InboundFollow(Base):
    """A remote actor following a local identity."""

    __tablename__ = "inbound_follows"
    __table_args__ = (
        UniqueConstraint("local_identity_id", "follower_actor_url", name="uq_inbound_follow_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    local_identity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("local_identities.id", ondelete="CASCADE"), nullable=False
    )
    follower_actor_url: Mapped[str] = mapped_column(Text, nullable=False)
    follow_activity_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=FOLLOW_ACCEPTED)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class OutgoingFollow(Base):
    """A local identity following a remote actor."""

    __tablename__ = "outgoing_follows"
    __table_args__ = (
        UniqueConstraint("local_identity_id", "remote_actor_url", name="uq_outgoing_follow_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    local_identity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("local_identities.id", ondelete="CASCADE"), nullable=False
    )
    remote_actor_url: Mapped[str] = mapped_column(Text, nullable=False)
    follow_activity_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=FOLLOW_PENDING)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
