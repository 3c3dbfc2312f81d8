from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.central.models import Base
from app.central.utils import isoformat


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (Index("idx_messages_created_at", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    audience: Mapped[str] = mapped_column(String(16), nullable=False, default="all")  # all | user | admin | supergod
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")  # normal | high
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    def to_dict(self, *, read: bool | None = None) -> dict:
        d = {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "audience": self.audience,
            "priority": self.priority,
            "is_active": self.is_active,
            "created_by_user_id": self.created_by_user_id,
            "created_at": isoformat(self.created_at),
            "expires_at": isoformat(self.expires_at),
        }
        if read is not None:
            d["read"] = read
        return d


class MessageRead(Base):
    __tablename__ = "message_reads"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    message_id: Mapped[int] = mapped_column(ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True)
    read_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
