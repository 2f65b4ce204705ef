"""Project model: one repository clone plus one secret blob."""

from __future__ import annotations

from sqlalchemy import Text
from sqlalchemy.orm import Mapped, mapped_column

from syncvault.models.base import Base


class Project(Base):
    """A tracked project.

    ``local_repo_root`` is the working tree the tracked files came from;
    ``local_clone_path`` is the engine-owned clone holding templates and
    mappings.
    """

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    local_repo_root: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    github_owner: Mapped[str | None] = mapped_column(Text, nullable=True)
    github_repo: Mapped[str | None] = mapped_column(Text, nullable=True)
    github_clone_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    local_clone_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    aws_region: Mapped[str | None] = mapped_column(Text, nullable=True)
    aws_secret_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)
