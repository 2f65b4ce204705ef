"""Tests for metadata store access."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from syncvault.models import CONFLICT_OPEN, CONFLICT_RESOLVED
from syncvault.services.metadata_service import (
    create_conflict,
    create_destination,
    create_file,
    create_project,
    find_destination,
    find_file_by_project_path,
    find_open_conflict_by_destination,
    find_project_by_local_root,
    get_conflict_item,
    get_destination_context,
    list_destination_paths,
    list_destinations_by_file,
    list_open_conflicts,
    list_projects,
    normalize_path,
    resolve_conflict,
    update_destination_fields,
    update_project_fields,
)

if TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncSession


async def _seed(session: AsyncSession, *paths: str) -> tuple[str, list[str]]:
    project = await create_project(
        session,
        local_repo_root="/src/app",
        local_clone_path="/data/repos/p1",
        aws_region="us-east-1",
        aws_secret_id="syncvault/local/p1",
    )
    tracked = await create_file(
        session,
        id="file-1",
        project_id=project.id,
        source_relative_path=".env",
        template_path="templates/.env.template",
        mapping_path="syncvault/files/file-1.json",
    )
    destination_ids = []
    for path in paths:
        destination = await create_destination(session, file_id=tracked.id, destination_path=path)
        destination_ids.append(destination.id)
    return project.id, destination_ids


class TestProjects:
    @pytest.mark.asyncio
    async def test_create_and_find(self, db_session: AsyncSession) -> None:
        project_id, _ = await _seed(db_session)
        found = await find_project_by_local_root(db_session, "/src/app")
        assert found is not None
        assert found.id == project_id
        assert [p.id for p in await list_projects(db_session)] == [project_id]

    @pytest.mark.asyncio
    async def test_update_fields(self, db_session: AsyncSession) -> None:
        project_id, _ = await _seed(db_session)
        await update_project_fields(db_session, project_id, github_owner="acme", github_repo="envs")
        found = await find_project_by_local_root(db_session, "/src/app")
        assert found is not None
        assert (found.github_owner, found.github_repo) == ("acme", "envs")

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, db_session: AsyncSession) -> None:
        project_id, _ = await _seed(db_session)
        with pytest.raises(ValueError, match="Unknown project fields"):
            await update_project_fields(db_session, project_id, local_repo_root="/elsewhere")


class TestDestinations:
    @pytest.mark.asyncio
    async def test_context_joins_file_and_project(self, db_session: AsyncSession) -> None:
        _, (destination_id,) = await _seed(db_session, "/src/app/.env")
        context = await get_destination_context(db_session, "/src/app/.env")
        assert context is not None
        assert context.id == destination_id
        assert context.aws_secret_id == "syncvault/local/p1"
        assert str(context.template_full_path) == "/data/repos/p1/templates/.env.template"
        assert str(context.mapping_full_path) == "/data/repos/p1/syncvault/files/file-1.json"

    @pytest.mark.asyncio
    async def test_disabled_destinations_hidden(self, db_session: AsyncSession) -> None:
        _, (first, _second) = await _seed(db_session, "/a/.env", "/b/.env")
        await update_destination_fields(db_session, first, is_enabled=False)

        assert await list_destination_paths(db_session) == ["/b/.env"]
        assert await get_destination_context(db_session, "/a/.env") is None
        assert await get_destination_context(db_session, "/a/.env", enabled_only=False) is not None
        assert len(await list_destinations_by_file(db_session, "file-1")) == 1
        assert len(await list_destinations_by_file(db_session, "file-1", enabled_only=False)) == 2

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, db_session: AsyncSession) -> None:
        _, (destination_id,) = await _seed(db_session, "/a/.env")
        with pytest.raises(ValueError, match="Unknown destination fields"):
            await update_destination_fields(db_session, destination_id, destination_path="/x")

    @pytest.mark.asyncio
    async def test_find_helpers(self, db_session: AsyncSession) -> None:
        project_id, _ = await _seed(db_session, "/a/.env")
        assert await find_file_by_project_path(db_session, project_id, ".env") is not None
        assert await find_file_by_project_path(db_session, project_id, ".env.prod") is None
        assert await find_destination(db_session, "file-1", "/a/.env") is not None
        assert await find_destination(db_session, "file-1", "/b/.env") is None

    def test_normalize_path(self, tmp_path: Path) -> None:
        nested = tmp_path / "x" / ".." / ".env"
        assert normalize_path(nested) == str((tmp_path / ".env").resolve())


class TestConflicts:
    @pytest.mark.asyncio
    async def test_open_and_resolve(self, db_session: AsyncSession) -> None:
        _, (destination_id,) = await _seed(db_session, "/a/.env")
        conflict = await create_conflict(
            db_session,
            destination_id=destination_id,
            local_copy_path="/c/.env.local",
            remote_copy_path="/c/.env.remote",
        )
        assert conflict.status == CONFLICT_OPEN
        assert await find_open_conflict_by_destination(db_session, destination_id) is not None

        items = await list_open_conflicts(db_session)
        assert [item.destination_path for item in items] == ["/a/.env"]

        await resolve_conflict(db_session, conflict.id)

        item = await get_conflict_item(db_session, conflict.id)
        assert item is not None
        assert item.status == CONFLICT_RESOLVED
        assert await find_open_conflict_by_destination(db_session, destination_id) is None
        assert await list_open_conflicts(db_session) == []

    @pytest.mark.asyncio
    async def test_missing_conflict(self, db_session: AsyncSession) -> None:
        assert await get_conflict_item(db_session, "nope") is None
