"""Metadata store access: projects, tracked files, destinations and conflicts."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update

from syncvault.models import (
    CONFLICT_OPEN,
    CONFLICT_RESOLVED,
    Conflict,
    Destination,
    Project,
    TrackedFile,
)
from syncvault.services.datetime_service import now_iso

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

_DESTINATION_FIELDS = frozenset(
    {"last_local_hash", "last_render_hash", "last_tool_write_at", "is_enabled"}
)
_PROJECT_FIELDS = frozenset(
    {
        "display_name",
        "github_owner",
        "github_repo",
        "github_clone_url",
        "local_clone_path",
        "aws_region",
        "aws_secret_id",
    }
)


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_path(path: str | Path) -> str:
    """Canonical absolute form used for destination paths."""
    return str(Path(path).expanduser().resolve())


@dataclass(frozen=True)
class DestinationContext:
    """A destination row joined with its file and project."""

    id: str
    file_id: str
    project_id: str
    destination_path: str
    last_local_hash: str | None
    last_render_hash: str | None
    last_tool_write_at: int | None
    is_enabled: bool
    template_path: str
    mapping_path: str
    local_clone_path: str | None
    aws_secret_id: str | None
    aws_region: str | None
    github_owner: str | None
    github_repo: str | None

    @property
    def clone_dir(self) -> Path | None:
        return Path(self.local_clone_path) if self.local_clone_path else None

    @property
    def template_full_path(self) -> Path | None:
        clone = self.clone_dir
        return clone / self.template_path if clone else None

    @property
    def mapping_full_path(self) -> Path | None:
        clone = self.clone_dir
        return clone / self.mapping_path if clone else None


@dataclass(frozen=True)
class ConflictItem:
    """A conflict row joined with its destination path."""

    id: str
    destination_id: str
    destination_path: str
    detected_at: str
    local_copy_path: str | None
    remote_copy_path: str | None
    status: str


# --- Projects ---------------------------------------------------------------


async def list_projects(session: AsyncSession) -> list[Project]:
    result = await session.execute(select(Project).order_by(Project.created_at))
    return list(result.scalars().all())


async def get_project(session: AsyncSession, project_id: str) -> Project | None:
    return await session.get(Project, project_id)


async def find_project_by_local_root(session: AsyncSession, local_repo_root: str) -> Project | None:
    stmt = select(Project).where(Project.local_repo_root == local_repo_root).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none()


async def create_project(session: AsyncSession, **fields: Any) -> Project:
    now = now_iso()
    project = Project(id=fields.pop("id", None) or new_id(), created_at=now, updated_at=now, **fields)
    session.add(project)
    await session.commit()
    return project


async def update_project_fields(session: AsyncSession, project_id: str, **fields: Any) -> None:
    unknown = set(fields) - _PROJECT_FIELDS
    if unknown:
        msg = f"Unknown project fields: {sorted(unknown)}"
        raise ValueError(msg)
    await session.execute(
        update(Project).where(Project.id == project_id).values(**fields, updated_at=now_iso())
    )
    await session.commit()


# --- Files ------------------------------------------------------------------


async def get_file(session: AsyncSession, file_id: str) -> TrackedFile | None:
    return await session.get(TrackedFile, file_id)


async def find_file_by_project_path(
    session: AsyncSession, project_id: str, source_relative_path: str
) -> TrackedFile | None:
    stmt = (
        select(TrackedFile)
        .where(
            TrackedFile.project_id == project_id,
            TrackedFile.source_relative_path == source_relative_path,
        )
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def create_file(session: AsyncSession, **fields: Any) -> TrackedFile:
    now = now_iso()
    tracked = TrackedFile(created_at=now, updated_at=now, **fields)
    session.add(tracked)
    await session.commit()
    return tracked


# --- Destinations -------------------------------------------------------------


async def list_destination_paths(session: AsyncSession) -> list[str]:
    """Return the paths of all enabled destinations."""
    stmt = (
        select(Destination.destination_path)
        .where(Destination.is_enabled.is_(True))
        .distinct()
        .order_by(Destination.destination_path)
    )
    return list((await session.execute(stmt)).scalars().all())


async def list_destinations_by_file(
    session: AsyncSession, file_id: str, *, enabled_only: bool = True
) -> list[Destination]:
    stmt = select(Destination).where(Destination.file_id == file_id)
    if enabled_only:
        stmt = stmt.where(Destination.is_enabled.is_(True))
    return list((await session.execute(stmt.order_by(Destination.destination_path))).scalars())


async def find_destination(
    session: AsyncSession, file_id: str, destination_path: str
) -> Destination | None:
    stmt = (
        select(Destination)
        .where(Destination.file_id == file_id, Destination.destination_path == destination_path)
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def create_destination(
    session: AsyncSession,
    *,
    file_id: str,
    destination_path: str,
    last_local_hash: str | None = None,
    last_render_hash: str | None = None,
    last_tool_write_at: int | None = None,
) -> Destination:
    now = now_iso()
    destination = Destination(
        id=new_id(),
        file_id=file_id,
        destination_path=destination_path,
        last_local_hash=last_local_hash,
        last_render_hash=last_render_hash,
        last_tool_write_at=last_tool_write_at,
        is_enabled=True,
        created_at=now,
        updated_at=now,
    )
    session.add(destination)
    await session.commit()
    return destination


def _context_query():  # type: ignore[no-untyped-def]
    return (
        select(Destination, TrackedFile, Project)
        .join(TrackedFile, TrackedFile.id == Destination.file_id)
        .join(Project, Project.id == TrackedFile.project_id)
    )


def _to_context(destination: Destination, tracked: TrackedFile, project: Project) -> DestinationContext:
    return DestinationContext(
        id=destination.id,
        file_id=tracked.id,
        project_id=project.id,
        destination_path=destination.destination_path,
        last_local_hash=destination.last_local_hash,
        last_render_hash=destination.last_render_hash,
        last_tool_write_at=destination.last_tool_write_at,
        is_enabled=destination.is_enabled,
        template_path=tracked.template_path,
        mapping_path=tracked.mapping_path,
        local_clone_path=project.local_clone_path,
        aws_secret_id=project.aws_secret_id,
        aws_region=project.aws_region,
        github_owner=project.github_owner,
        github_repo=project.github_repo,
    )


async def get_destination_context(
    session: AsyncSession, destination_path: str, *, enabled_only: bool = True
) -> DestinationContext | None:
    """Load the full sync context for a destination path.

    A path bound to more than one file resolves to the most recently updated
    destination row.
    """
    stmt = _context_query().where(Destination.destination_path == destination_path)
    if enabled_only:
        stmt = stmt.where(Destination.is_enabled.is_(True))
    row = (await session.execute(stmt.order_by(Destination.updated_at.desc()).limit(1))).first()
    if row is None:
        return None
    return _to_context(*row)


async def get_destination_context_by_id(
    session: AsyncSession, destination_id: str
) -> DestinationContext | None:
    stmt = _context_query().where(Destination.id == destination_id)
    row = (await session.execute(stmt)).first()
    if row is None:
        return None
    return _to_context(*row)


async def update_destination_fields(
    session: AsyncSession, destination_id: str, **fields: Any
) -> None:
    """Update several destination columns in one statement."""
    unknown = set(fields) - _DESTINATION_FIELDS
    if unknown:
        msg = f"Unknown destination fields: {sorted(unknown)}"
        raise ValueError(msg)
    await session.execute(
        update(Destination)
        .where(Destination.id == destination_id)
        .values(**fields, updated_at=now_iso())
    )
    await session.commit()


# --- Conflicts ----------------------------------------------------------------


async def find_open_conflict_by_destination(
    session: AsyncSession, destination_id: str
) -> Conflict | None:
    stmt = (
        select(Conflict)
        .where(Conflict.destination_id == destination_id, Conflict.status == CONFLICT_OPEN)
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def create_conflict(
    session: AsyncSession,
    *,
    destination_id: str,
    local_copy_path: str | None,
    remote_copy_path: str | None,
) -> Conflict:
    conflict = Conflict(
        id=new_id(),
        destination_id=destination_id,
        detected_at=now_iso(),
        local_copy_path=local_copy_path,
        remote_copy_path=remote_copy_path,
        status=CONFLICT_OPEN,
    )
    session.add(conflict)
    await session.commit()
    return conflict


def _conflict_item_query():  # type: ignore[no-untyped-def]
    return select(Conflict, Destination.destination_path).join(
        Destination, Destination.id == Conflict.destination_id
    )


def _to_conflict_item(conflict: Conflict, destination_path: str) -> ConflictItem:
    return ConflictItem(
        id=conflict.id,
        destination_id=conflict.destination_id,
        destination_path=destination_path,
        detected_at=conflict.detected_at,
        local_copy_path=conflict.local_copy_path,
        remote_copy_path=conflict.remote_copy_path,
        status=conflict.status,
    )


async def get_conflict_item(session: AsyncSession, conflict_id: str) -> ConflictItem | None:
    row = (await session.execute(_conflict_item_query().where(Conflict.id == conflict_id))).first()
    if row is None:
        return None
    return _to_conflict_item(*row)


async def list_open_conflicts(session: AsyncSession) -> list[ConflictItem]:
    stmt = (
        _conflict_item_query()
        .where(Conflict.status == CONFLICT_OPEN)
        .order_by(Conflict.detected_at)
    )
    return [_to_conflict_item(*row) for row in (await session.execute(stmt)).all()]


async def resolve_conflict(session: AsyncSession, conflict_id: str) -> None:
    await session.execute(
        update(Conflict)
        .where(Conflict.id == conflict_id)
        .values(status=CONFLICT_RESOLVED, resolved_at=now_iso())
    )
    await session.commit()
