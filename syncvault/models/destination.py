"""Destination model: a concrete file on disk bound to a tracked file."""

from __future__ import annotations

from sqlalchemy import BigInteger, Boolean, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from syncvault.models.base import Base


class Destination(Base):
    """Sync state of one destination path.

    Hash and timestamp fields are only written through
    ``syncvault.services.state_service``.
    """

    __tablename__ = "destinations"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    file_id: Mapped[str] = mapped_column(
        Text, ForeignKey("files.id", ondelete="CASCADE"), nullable=False
    )
    destination_path: Mapped[str] = mapped_column(Text, nullable=False)
    last_local_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_render_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Epoch milliseconds of the engine's last write to destination_path
    last_tool_write_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (UniqueConstraint("file_id", "destination_path"),)
