"""SQLAlchemy model for the operator-managed domain blocklist."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from herald.db.session import Base
from herald.db.time import utcnow

DOMAIN_BLOCKED = "blocked"
DOMAIN_ALLOWED = "allowed"


class BlockedDomain(Base):
    """A remote host this instance refuses to talk to."""

    __tablename__ = "blocked_domains"

    host: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DOMAIN_BLOCKED)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
