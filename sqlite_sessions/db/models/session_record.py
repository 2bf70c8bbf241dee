from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from sqlite_sessions.db.base import Base


class SessionRecord(Base):
    """Server-side session row: sealed payload keyed by the session id."""

    __tablename__ = "sessions"

    # Base provides: created_at, modified_at
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<SessionRecord(id={self.id[:6]!r}..., expires_at={self.expires_at!r})>"
