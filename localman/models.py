# localman/models.py
from __future__ import annotations
from datetime import datetime
from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from .db import Base, isoformat, utcnow

class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "created_at": isoformat(self.created_at)}

class Relay(Base):
    __tablename__ = "relays"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id"), index=True, nullable=False)
    description: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    webhook_uuid: Mapped[str] = mapped_column(String(64), nullable=False)
    webhook_url: Mapped[str] = mapped_column(String(512), nullable=False)
    relay_to_url: Mapped[str] = mapped_column(String(512), default="", nullable=False)
    capture_only: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    polling_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_checked: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_relayed: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    relay_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # broker "since" value for the next cycle; None after a poll means fetch-all
    poll_cursor: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "description": self.description,
            "webhook_uuid": self.webhook_uuid,
            "webhook_url": self.webhook_url,
            "relay_to_url": self.relay_to_url,
            "capture_only": self.capture_only,
            "enabled": self.enabled,
            "polling_enabled": self.polling_enabled,
            "created_at": isoformat(self.created_at),
            "last_checked": isoformat(self.last_checked),
            "last_relayed": isoformat(self.last_relayed),
            "last_error": self.last_error,
            "relay_count": self.relay_count,
            "error_count": self.error_count,
        }

    def __repr__(self):
        return f"<Relay id={self.id} webhook={self.webhook_uuid} capture_only={self.capture_only}>"

class HistoryRecord(Base):
    """One immutable JSON record (relay history entry or captured webhook)."""

    __tablename__ = "history_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    scope_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("ix_history_records_scope", "scope_kind", "scope_id", "id"),)

    def __repr__(self):
        return f"<HistoryRecord id={self.id} scope={self.scope_kind}:{self.scope_id}>"
