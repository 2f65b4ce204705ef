"""Conflict model."""

from __future__ import annotations

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from syncvault.models.base import Base

CONFLICT_OPEN = "open"
CONFLICT_RESOLVED = "resolved"


class Conflict(Base):
    """A detected divergence between a destination and its remote render."""

    __tablename__ = "conflicts"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    destination_id: Mapped[str] = mapped_column(
        Text, ForeignKey("destinations.id", ondelete="CASCADE"), nullable=False
    )
    detected_at: Mapped[str] = mapped_column(Text, nullable=False)
    local_copy_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    remote_copy_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=CONFLICT_OPEN)
    resolved_at: Mapped[str | None] = mapped_column(Text, nullable=True)
