"""Tests for adding, pulling, linking and disabling tracked files."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from syncvault.exceptions import IncompleteRenderError, SecretNotFoundError, UnsupportedFileTypeError
from syncvault.filesystem.atomic import read_text_exact
from syncvault.filesystem.mapping import ProjectMetadata, load_mapping
from syncvault.services.git_service import GitService
from syncvault.services.metadata_service import (
    get_destination_context,
    get_project,
    list_destination_paths,
)
from syncvault.services.state_service import hash_content
from syncvault.services.tracking_service import TrackingService, candidate_secret_ids
from tests.conftest import TEST_OWNER, TEST_REGION, TEST_REPO

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from syncvault.config import Settings
    from tests.conftest import FakeSecretStore, TrackedEnv


class TestAddFile:
    @pytest.mark.asyncio
    async def test_add_file_writes_template_mapping_and_secrets(
        self,
        app_repo: Path,
        tracking: TrackingService,
        secret_store: FakeSecretStore,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        env_path = app_repo / ".env"
        env_path.write_text("# app\nAPI_KEY=abc123\nPORT=8080\n")

        result = await tracking.add_file(env_path)

        assert result.template_path == "templates/.env.template"
        assert result.mapping_path == f"syncvault/files/{result.file_id}.json"
        assert result.secret_keys == ["API_KEY"]
        assert result.warnings == []

        async with session_factory() as session:
            project = await get_project(session, result.project_id)
            context = await get_destination_context(session, str(env_path))
        assert project is not None
        assert project.local_repo_root == str(app_repo)
        assert context is not None
        assert context.last_local_hash == hash_content(env_path.read_text())
        assert context.last_render_hash is None

        assert context.clone_dir is not None
        clone = GitService(context.clone_dir)
        template = read_text_exact(clone.repo_dir / result.template_path)
        assert template == "# app\nAPI_KEY={{SYNCVAULT:API_KEY}}\nPORT=8080\n"
        mapping = load_mapping(clone.repo_dir / result.mapping_path)
        assert mapping.secret_keys == {"API_KEY"}
        metadata = json.loads((clone.repo_dir / "syncvault" / "project.json").read_text())
        assert metadata["projectId"] == result.project_id
        assert clone.head_commit() is not None

        secret_id = f"syncvault/local/{result.project_id}"
        assert secret_store.blobs[(secret_id, TEST_REGION)] == {"API_KEY": "abc123"}

    @pytest.mark.asyncio
    async def test_marker_keys_are_secret(
        self, app_repo: Path, tracking: TrackingService, secret_store: FakeSecretStore
    ) -> None:
        env_path = app_repo / ".env"
        env_path.write_text("DB_PASSWORD=secret!SYNCVAULT\nPORT=8080\n")

        result = await tracking.add_file(env_path, secret_keys=[])

        assert result.secret_keys == ["DB_PASSWORD"]
        (blob,) = secret_store.blobs.values()
        assert blob == {"DB_PASSWORD": "secret"}

    @pytest.mark.asyncio
    async def test_without_secret_names_every_key_is_secret(
        self, app_repo: Path, tracking: TrackingService
    ) -> None:
        env_path = app_repo / ".env.local"
        env_path.write_text("HOST=db\nPORT=5432\n")

        result = await tracking.add_file(env_path)

        assert result.secret_keys == ["HOST", "PORT"]
        assert result.template_path == "templates/.env.local.template"

    @pytest.mark.asyncio
    async def test_nested_file_uses_repo_relative_path(
        self, app_repo: Path, tracking: TrackingService
    ) -> None:
        nested = app_repo / "services" / "api"
        nested.mkdir(parents=True)
        env_path = nested / ".env"
        env_path.write_text("TOKEN=t\n")

        first = await tracking.add_file(env_path)

        assert first.template_path == "templates/services/api/.env.template"

    @pytest.mark.asyncio
    async def test_files_in_same_repo_share_project(
        self, app_repo: Path, tracking: TrackingService
    ) -> None:
        (app_repo / ".env").write_text("TOKEN=a\n")
        (app_repo / ".env.test").write_text("TOKEN=b\n")

        first = await tracking.add_file(app_repo / ".env")
        second = await tracking.add_file(app_repo / ".env.test")

        assert first.project_id == second.project_id
        assert first.file_id != second.file_id

    @pytest.mark.asyncio
    async def test_re_adding_keeps_file_id(self, app_repo: Path, tracking: TrackingService) -> None:
        env_path = app_repo / ".env"
        env_path.write_text("TOKEN=a\n")
        first = await tracking.add_file(env_path)
        env_path.write_text("TOKEN=a\nHOST=h !SYNCVAULT\n")
        second = await tracking.add_file(env_path)

        assert second.file_id == first.file_id
        assert second.secret_keys == ["HOST", "TOKEN"]

    @pytest.mark.asyncio
    async def test_rejects_non_env_files(self, app_repo: Path, tracking: TrackingService) -> None:
        config = app_repo / "config.json"
        config.write_text("{}")
        with pytest.raises(UnsupportedFileTypeError):
            await tracking.add_file(config)

    @pytest.mark.asyncio
    async def test_missing_file(self, app_repo: Path, tracking: TrackingService) -> None:
        with pytest.raises(FileNotFoundError):
            await tracking.add_file(app_repo / ".env")

    @pytest.mark.asyncio
    async def test_secret_store_failure_becomes_warning(
        self, app_repo: Path, tracking: TrackingService, secret_store: FakeSecretStore
    ) -> None:
        secret_store.fail_writes = True
        env_path = app_repo / ".env"
        env_path.write_text("API_KEY=abc\n")

        result = await tracking.add_file(env_path)

        assert result.warnings == ["Failed to update the secret store."]

    @pytest.mark.asyncio
    async def test_missing_region_becomes_warning(
        self,
        app_repo: Path,
        test_settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        secret_store: FakeSecretStore,
        git_factory: Callable[[Path], GitService],
        tracking: TrackingService,
    ) -> None:
        no_region = test_settings.model_copy(update={"aws_region": None})
        service = TrackingService(
            no_region, session_factory, secret_store, tracking.locks, git_factory
        )
        env_path = app_repo / ".env"
        env_path.write_text("API_KEY=abc\n")

        result = await service.add_file(env_path)

        assert result.warnings == ["AWS region is not configured; secrets were not saved."]
        assert secret_store.blobs == {}


class TestRemoteFiles:
    @pytest.mark.asyncio
    async def test_link_remote_publishes_clone(
        self,
        tracked_env: TrackedEnv,
        tmp_path: Path,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        async with session_factory() as session:
            project = await get_project(session, tracked_env.result.project_id)
        assert project is not None
        assert project.github_owner == TEST_OWNER
        assert project.github_clone_url == str(tracked_env.remote)

        other = GitService(tmp_path / "check")
        other.ensure_clone(str(tracked_env.remote))
        assert (other.repo_dir / tracked_env.result.template_path).is_file()

    @pytest.mark.asyncio
    async def test_list_remote_files(self, tracked_env: TrackedEnv, tracking: TrackingService) -> None:
        items = await tracking.list_remote_files(
            TEST_OWNER, TEST_REPO, clone_url=str(tracked_env.remote)
        )
        assert [(i.file_id, i.template_path) for i in items] == [
            (tracked_env.result.file_id, "templates/.env.template")
        ]

    @pytest.mark.asyncio
    async def test_pull_file_renders_and_tracks(
        self,
        tracked_env: TrackedEnv,
        tracking: TrackingService,
        tmp_path: Path,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        target = tmp_path / "laptop" / ".env"

        written = await tracking.pull_file(
            TEST_OWNER,
            TEST_REPO,
            tracked_env.result.file_id,
            target,
            clone_url=str(tracked_env.remote),
        )

        assert written == target.resolve()
        assert target.read_text() == "API_KEY=abc123\nPORT=8080\n"
        async with session_factory() as session:
            context = await get_destination_context(session, str(written))
        assert context is not None
        rendered_hash = hash_content("API_KEY=abc123\nPORT=8080\n")
        assert context.last_local_hash == rendered_hash
        assert context.last_render_hash == rendered_hash
        assert context.last_tool_write_at is not None

    @pytest.mark.asyncio
    async def test_pull_file_without_secret_fails(
        self,
        tracked_env: TrackedEnv,
        tracking: TrackingService,
        secret_store: FakeSecretStore,
        tmp_path: Path,
    ) -> None:
        secret_store.blobs.clear()
        with pytest.raises(SecretNotFoundError):
            await tracking.pull_file(
                TEST_OWNER,
                TEST_REPO,
                tracked_env.result.file_id,
                tmp_path / "laptop" / ".env",
                clone_url=str(tracked_env.remote),
            )
        assert not (tmp_path / "laptop" / ".env").exists()

    @pytest.mark.asyncio
    async def test_pull_file_with_incomplete_blob_fails(
        self,
        tracked_env: TrackedEnv,
        tracking: TrackingService,
        secret_store: FakeSecretStore,
        tmp_path: Path,
    ) -> None:
        secret_store.blobs[(tracked_env.secret_id, TEST_REGION)] = {"OTHER": "x"}
        with pytest.raises(IncompleteRenderError):
            await tracking.pull_file(
                TEST_OWNER,
                TEST_REPO,
                tracked_env.result.file_id,
                tmp_path / "laptop" / ".env",
                clone_url=str(tracked_env.remote),
            )

    def test_candidate_secret_ids(self) -> None:
        metadata = ProjectMetadata.model_validate(
            {"projectId": "p1", "aws": {"secretId": "custom/secret"}}
        )
        assert candidate_secret_ids(metadata, "acme", "envs") == [
            "custom/secret",
            "syncvault/acme/p1",
            "syncvault/acme/envs",
            "syncvault/local/p1",
        ]
        assert candidate_secret_ids(None, "acme", "envs") == ["syncvault/acme/envs"]


class TestDestinationEnabled:
    @pytest.mark.asyncio
    async def test_disable_and_enable(
        self,
        tracked_env: TrackedEnv,
        tracking: TrackingService,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        assert await tracking.set_destination_enabled(tracked_env.path, False) is True
        async with session_factory() as session:
            assert await list_destination_paths(session) == []

        assert await tracking.set_destination_enabled(tracked_env.path, True) is True
        async with session_factory() as session:
            assert await list_destination_paths(session) == [str(tracked_env.path)]

    @pytest.mark.asyncio
    async def test_unknown_path(self, tracking: TrackingService, tmp_path: Path) -> None:
        assert await tracking.set_destination_enabled(tmp_path / ".env", False) is False
