from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Integer, String, or_, select
from sqlalchemy.orm import Mapped, Session, mapped_column, validates

from .base import Base


class Admin(Base):
    """Organizer/administrator account allowed to create raffles."""

    __tablename__ = "admins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[Optional[str]] = mapped_column(String(100), unique=True, index=True, nullable=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="admin")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @validates("email")
    def _normalize_email(self, _key: str, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = value.strip().lower()
        return normalized or None

    @validates("username")
    def _normalize_username(self, _key: str, value: str) -> str:
        normalized = (value or "").strip()
        if not normalized:
            raise ValueError("username must not be empty")
        return normalized

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return f"<Admin(id={self.id}, username='{self.username}', role='{self.role}')>"

    @classmethod
    def get_by_username(cls, session: Session, username: str) -> Optional["Admin"]:
        return session.scalar(select(cls).where(cls.username == username.strip()))

    @classmethod
    def get_by_identifier(cls, session: Session, identifier: str) -> Optional["Admin"]:
        """Look an admin up by email or username, whichever matches."""
        value = identifier.strip()
        return session.scalar(
            select(cls).where(or_(cls.email == value.lower(), cls.username == value))
        )
