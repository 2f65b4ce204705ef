"""Tracking operations: add local files, pull remote ones and link remotes."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from syncvault.exceptions import (
    IncompleteRenderError,
    SecretNotFoundError,
    SecretStoreError,
    SyncVaultError,
    UnsupportedFileTypeError,
)
from syncvault.filesystem.atomic import read_text_exact, write_text_atomic
from syncvault.filesystem.dotenv import parse, serialize
from syncvault.filesystem.mapping import (
    ProjectMetadata,
    build_mapping,
    ensure_project_metadata,
    list_mappings,
    load_mapping,
    load_project_metadata,
    mapping_path_for,
    save_mapping,
    template_path_for,
)
from syncvault.filesystem.template import classify_secret_keys, find_placeholders, hydrate, render
from syncvault.services.datetime_service import now_iso
from syncvault.services.git_service import github_clone_url
from syncvault.services.metadata_service import (
    create_destination,
    create_file,
    create_project,
    find_destination,
    find_file_by_project_path,
    find_project_by_local_root,
    get_destination_context,
    get_file,
    get_project,
    new_id,
    normalize_path,
    update_project_fields,
)
from syncvault.services.state_service import hash_content, record_render_write, set_enabled

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from syncvault.config import Settings
    from syncvault.filesystem.mapping import FileMapping
    from syncvault.models import Project
    from syncvault.services.git_service import GitService
    from syncvault.services.locks import SyncLocks
    from syncvault.services.secret_store import SecretStore

logger = logging.getLogger(__name__)

_DOTENV = "dotenv"


@dataclass
class AddFileResult:
    project_id: str
    file_id: str
    template_path: str
    mapping_path: str
    secret_keys: list[str]
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RemoteFileItem:
    file_id: str
    template_path: str
    mapping_path: str


def determine_file_type(path: Path) -> str:
    """Only ``.env`` style files are supported."""
    if path.name.startswith(".env"):
        return _DOTENV
    msg = f"Unsupported file type: {path.name}. Only .env files are supported."
    raise UnsupportedFileTypeError(msg)


def remote_clone_dir(settings: Settings, owner: str, repo: str) -> Path:
    return settings.repos_dir / f"{owner}-{repo}"


def candidate_secret_ids(
    metadata: ProjectMetadata | None, owner: str, repo: str
) -> list[str]:
    """Secret ids to try, most specific first, without duplicates."""
    project_id = metadata.project_id if metadata else None
    candidates = [
        metadata.aws.secret_id if metadata else None,
        f"syncvault/{owner}/{project_id}" if project_id else None,
        f"syncvault/{owner}/{repo}",
        f"syncvault/local/{project_id}" if project_id else None,
    ]
    return list(dict.fromkeys(c for c in candidates if c))


class TrackingService:
    """On-demand operations that create or change what the engine tracks."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        secret_store: SecretStore,
        locks: SyncLocks,
        git_factory: Callable[[Path], GitService],
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.secret_store = secret_store
        self.locks = locks
        self.git_factory = git_factory

    # --- add ----------------------------------------------------------------------

    async def _detect_repo_root(self, path: Path) -> Path:
        toplevel = await asyncio.to_thread(self.git_factory(path.parent).show_toplevel)
        if toplevel is None:
            logger.debug("%s is not inside a git work tree; using its directory", path)
            return path.parent
        return toplevel.resolve()

    async def _ensure_project(self, session: AsyncSession, repo_root: Path) -> Project:
        project = await find_project_by_local_root(session, str(repo_root))
        if project is None:
            project_id = new_id()
            return await create_project(
                session,
                id=project_id,
                local_repo_root=str(repo_root),
                display_name=repo_root.name,
                local_clone_path=str(self.settings.repos_dir / project_id),
                aws_region=self.settings.aws_region,
                aws_secret_id=f"syncvault/local/{project_id}",
            )
        updates: dict[str, str] = {}
        if not project.local_clone_path:
            updates["local_clone_path"] = str(self.settings.repos_dir / project.id)
        if not project.aws_region and self.settings.aws_region:
            updates["aws_region"] = self.settings.aws_region
        if not project.aws_secret_id:
            updates["aws_secret_id"] = f"syncvault/local/{project.id}"
        if updates:
            await update_project_fields(session, project.id, **updates)
            for name, value in updates.items():
                setattr(project, name, value)
        return project

    async def add_file(
        self, file_path: str | Path, secret_keys: Iterable[str] | None = None
    ) -> AddFileResult:
        """Start tracking a local ``.env`` file.

        ``secret_keys`` overrides the name heuristic; keys carrying the
        ``!SYNCVAULT`` marker are always secret. When nothing is selected,
        every key is treated as secret.
        """
        path = Path(normalize_path(file_path))
        if not path.is_file():
            msg = f"File does not exist: {path}"
            raise FileNotFoundError(msg)
        file_type = determine_file_type(path)
        repo_root = await self._detect_repo_root(path)
        relative = path.relative_to(repo_root).as_posix()
        warnings: list[str] = []

        async with self.locks.destinations.hold(str(path)):
            async with self.session_factory() as session:
                project = await self._ensure_project(session, repo_root)
                clone_dir = Path(project.local_clone_path or self.settings.repos_dir / project.id)

                content = read_text_exact(path)
                document = parse(content)
                if secret_keys is None:
                    keys = classify_secret_keys(document, fallback_to_all=True)
                else:
                    keys = set(secret_keys) | classify_secret_keys(document, use_heuristic=False)

                existing = await find_file_by_project_path(session, project.id, relative)
                file_id = existing.id if existing else new_id()
                template_path = template_path_for(relative)
                mapping_path = mapping_path_for(file_id)

                async with self.locks.repositories.hold(str(clone_dir)):
                    git = self.git_factory(clone_dir)
                    await asyncio.to_thread(git.init_repo)
                    ensure_project_metadata(
                        clone_dir,
                        ProjectMetadata(
                            project_id=project.id,
                            local_repo_root=project.local_repo_root,
                            created_at=now_iso(),
                        ),
                    )
                    mapping = self._merge_mapping(
                        clone_dir / mapping_path, file_id, template_path, file_type, keys
                    )
                    template, secrets = render(document, mapping.secret_keys, keep_empty=True)
                    write_text_atomic(clone_dir / template_path, serialize(template))
                    save_mapping(clone_dir / mapping_path, mapping)
                    await asyncio.to_thread(git.commit_all, f"SyncVault: track {relative}")

                if existing is None:
                    await create_file(
                        session,
                        id=file_id,
                        project_id=project.id,
                        source_relative_path=relative,
                        template_path=template_path,
                        mapping_path=mapping_path,
                        type=file_type,
                    )
                if await find_destination(session, file_id, str(path)) is None:
                    await create_destination(
                        session,
                        file_id=file_id,
                        destination_path=str(path),
                        last_local_hash=hash_content(content),
                    )

                warnings.extend(await self._upload_secrets(project, mapping, secrets))

        logger.info("Added %s to project %s", relative, project.display_name or project.id)
        return AddFileResult(
            project_id=project.id,
            file_id=file_id,
            template_path=template_path,
            mapping_path=mapping_path,
            secret_keys=sorted(mapping.secret_keys),
            warnings=warnings,
        )

    def _merge_mapping(
        self,
        mapping_full_path: Path,
        file_id: str,
        template_path: str,
        file_type: str,
        keys: set[str],
    ) -> FileMapping:
        if mapping_full_path.is_file():
            mapping = load_mapping(mapping_full_path)
            mapping.add_secret_keys(keys)
            return mapping
        return build_mapping(file_id, template_path, file_type, keys)

    async def _upload_secrets(
        self, project: Project, mapping: FileMapping, secrets: dict[str, str]
    ) -> list[str]:
        if not secrets:
            return []
        region = project.aws_region or self.settings.aws_region
        if not region or not project.aws_secret_id:
            logger.warning("AWS region not configured; secrets of project %s not saved", project.id)
            return ["AWS region is not configured; secrets were not saved."]
        try:
            await self.secret_store.upsert_secret_blob(
                project.aws_secret_id, region, mapping.to_blob_keys(secrets)
            )
        except SecretStoreError as exc:
            logger.warning("Secrets update failed for %s: %s", project.aws_secret_id, exc)
            return ["Failed to update the secret store."]
        return []

    # --- remote -------------------------------------------------------------------

    async def _sync_remote_clone(
        self, owner: str, repo: str, clone_url: str | None
    ) -> Path:
        clone_dir = remote_clone_dir(self.settings, owner, repo)
        git = self.git_factory(clone_dir)
        async with self.locks.repositories.hold(str(clone_dir)):
            await asyncio.to_thread(git.ensure_clone, clone_url or github_clone_url(owner, repo))
            await asyncio.to_thread(git.pull, self.settings.git_ref)
        return clone_dir

    async def list_remote_files(
        self, owner: str, repo: str, *, clone_url: str | None = None
    ) -> list[RemoteFileItem]:
        """List the tracked files published in a template repository."""
        clone_dir = await self._sync_remote_clone(owner, repo, clone_url)
        return [
            RemoteFileItem(
                file_id=mapping.file_id,
                template_path=mapping.template_path,
                mapping_path=mapping_path_for(mapping.file_id),
            )
            for mapping in list_mappings(clone_dir)
        ]

    async def _fetch_remote_blob(
        self, candidates: list[str], region: str
    ) -> tuple[str, dict[str, str]]:
        for secret_id in candidates:
            try:
                return secret_id, await self.secret_store.get_secret_blob(secret_id, region)
            except SecretNotFoundError:
                continue
        msg = f"Secret not found. Tried: {', '.join(candidates)}"
        raise SecretNotFoundError(msg)

    async def pull_file(
        self,
        owner: str,
        repo: str,
        file_id: str,
        target_path: str | Path,
        *,
        clone_url: str | None = None,
    ) -> Path:
        """Render a remote file into ``target_path`` and start tracking it there."""
        clone_dir = await self._sync_remote_clone(owner, repo, clone_url)
        mapping = load_mapping(clone_dir / mapping_path_for(file_id))
        template_text = read_text_exact(clone_dir / mapping.template_path)
        metadata = load_project_metadata(clone_dir)

        region = (metadata.aws.region if metadata else None) or self.settings.aws_region
        secret_id: str | None = None
        blob: dict[str, str] = {}
        if mapping.secret_keys:
            if not region:
                msg = "AWS region not configured."
                raise SyncVaultError(msg)
            secret_id, blob = await self._fetch_remote_blob(
                candidate_secret_ids(metadata, owner, repo), region
            )

        rendered = hydrate(template_text, mapping.resolve_secrets(blob))
        missing = find_placeholders(rendered)
        if missing:
            raise IncompleteRenderError(mapping.template_path, missing)

        target = Path(normalize_path(target_path))
        rendered_hash = hash_content(rendered)
        remote_url = clone_url or github_clone_url(owner, repo)
        async with self.locks.destinations.hold(str(target)):
            async with self.session_factory() as session:
                project = await self._ensure_pulled_project(
                    session, metadata, target.parent, clone_dir
                )
                updates: dict[str, str] = {
                    "github_owner": owner,
                    "github_repo": repo,
                    "github_clone_url": remote_url,
                }
                if region:
                    updates["aws_region"] = region
                if secret_id:
                    updates["aws_secret_id"] = secret_id
                await update_project_fields(session, project.id, **updates)

                tracked = await get_file(session, file_id)
                if tracked is None:
                    tracked = await create_file(
                        session,
                        id=file_id,
                        project_id=project.id,
                        source_relative_path=mapping.template_path,
                        template_path=mapping.template_path,
                        mapping_path=mapping_path_for(file_id),
                        type=mapping.type,
                    )

                write_text_atomic(target, rendered)
                destination = await find_destination(session, tracked.id, str(target))
                if destination is None:
                    destination = await create_destination(
                        session, file_id=tracked.id, destination_path=str(target)
                    )
                await record_render_write(session, destination.id, rendered_hash)

        logger.info("Pulled %s from %s/%s into %s", mapping.template_path, owner, repo, target)
        return target

    async def _ensure_pulled_project(
        self,
        session: AsyncSession,
        metadata: ProjectMetadata | None,
        local_root: Path,
        clone_dir: Path,
    ) -> Project:
        if metadata and metadata.project_id:
            project = await get_project(session, metadata.project_id)
            if project is not None:
                return project
        project = await find_project_by_local_root(session, str(local_root))
        if project is not None:
            return project
        return await create_project(
            session,
            id=(metadata.project_id if metadata else None) or new_id(),
            local_repo_root=str(local_root),
            display_name=local_root.name,
            local_clone_path=str(clone_dir),
        )

    async def link_remote(
        self, project_id: str, owner: str, repo: str, *, clone_url: str | None = None
    ) -> None:
        """Attach a remote to a project's clone and publish it."""
        async with self.session_factory() as session:
            project = await get_project(session, project_id)
            if project is None:
                msg = f"Project {project_id} not found"
                raise SyncVaultError(msg)
            if not project.local_clone_path:
                msg = f"Project {project_id} has no local clone"
                raise SyncVaultError(msg)
            remote_url = clone_url or github_clone_url(owner, repo)
            clone_dir = Path(project.local_clone_path)
            async with self.locks.repositories.hold(str(clone_dir)):
                git = self.git_factory(clone_dir)
                await asyncio.to_thread(git.init_repo)
                await asyncio.to_thread(git.ensure_remote, remote_url)
                await asyncio.to_thread(
                    git.push, owner, repo, ref=self.settings.git_ref, token=self.settings.github_token
                )
            await update_project_fields(
                session,
                project_id,
                github_owner=owner,
                github_repo=repo,
                github_clone_url=remote_url,
            )
        logger.info("Linked project %s to %s/%s", project_id, owner, repo)

    async def set_destination_enabled(self, destination_path: str | Path, enabled: bool) -> bool:
        """Disable or re-enable a destination. Returns False for unknown paths."""
        path = normalize_path(destination_path)
        async with self.locks.destinations.hold(path):
            async with self.session_factory() as session:
                context = await get_destination_context(session, path, enabled_only=False)
                if context is None:
                    return False
                await set_enabled(session, context.id, enabled)
        logger.info("%s destination %s", "Enabled" if enabled else "Disabled", path)
        return True
