"""SQLAlchemy model for identities hosted on this instance."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from herald.db.session import Base
from herald.db.time import utcnow

IDENTITY_ACTIVE = "active"
IDENTITY_DISABLED = "disabled"
IDENTITY_MOVED = "moved"


class LocalIdentity(Base):
    """A locally hosted actor that can publish and receive activities."""

    __tablename__ = "local_identities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    handle: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_url: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    inbox_url: Mapped[str] = mapped_column(Text, nullable=False)
    outbox_url: Mapped[str] = mapped_column(Text, nullable=False)
    followers_url: Mapped[str] = mapped_column(Text, nullable=False)
    # Written exactly once by KeyManager; never rotated in place.
    private_key_pem: Mapped[str | None] = mapped_column(Text, nullable=True)
    public_key_pem: Mapped[str | None] = mapped_column(Text, nullable=True)
    follower_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=IDENTITY_ACTIVE)
    moved_to: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    @property
    def key_id(self) -> str:
        """Return the public key identifier advertised in signatures."""
        return f"{self.actor_url}#main-key"

    @property
    def is_active(self) -> bool:
        """Return True when the identity may publish and receive."""
        return self.status == IDENTITY_ACTIVE
