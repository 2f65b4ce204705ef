"""Tracked file model."""

from __future__ import annotations

from sqlalchemy import ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from syncvault.models.base import Base


class TrackedFile(Base):
    """A configuration file whose template and mapping live in a project clone."""

    __tablename__ = "files"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    project_id: Mapped[str] = mapped_column(
        Text, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    source_relative_path: Mapped[str] = mapped_column(Text, nullable=False)
    template_path: Mapped[str] = mapped_column(Text, nullable=False)
    mapping_path: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False, default="dotenv")
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (UniqueConstraint("project_id", "source_relative_path"),)
