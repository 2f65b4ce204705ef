"""Conflict resolution: keep the local or the remote side of a destination."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from syncvault.exceptions import ConflictResolutionError, SecretNotFoundError
from syncvault.filesystem.atomic import read_text_exact, remove_if_exists, write_text_atomic
from syncvault.filesystem.dotenv import parse, serialize
from syncvault.filesystem.mapping import load_mapping
from syncvault.filesystem.template import find_placeholders, hydrate, render
from syncvault.models import CONFLICT_OPEN
from syncvault.services.metadata_service import (
    get_conflict_item,
    get_destination_context_by_id,
    resolve_conflict,
)
from syncvault.services.state_service import hash_content, record_render_write

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from syncvault.config import Settings
    from syncvault.filesystem.mapping import FileMapping
    from syncvault.services.git_service import GitService
    from syncvault.services.locks import SyncLocks
    from syncvault.services.metadata_service import ConflictItem, DestinationContext
    from syncvault.services.secret_store import SecretStore

logger = logging.getLogger(__name__)


def conflict_snapshot_paths(conflicts_dir: Path, destination_path: str) -> tuple[Path, Path]:
    """Stable ``(local, remote)`` snapshot paths for a destination.

    Repeated detections for the same destination overwrite the same pair.
    """
    digest = hashlib.sha256(destination_path.encode("utf-8")).hexdigest()[:16]
    name = Path(destination_path).name
    directory = conflicts_dir / digest
    return directory / f"{name}.local", directory / f"{name}.remote"


class ConflictResolver:
    """Applies an explicit resolution to an open conflict.

    Every failure leaves the conflict open: ``ConflictResolutionError`` for
    missing context, and git or secret-store errors as raised by those layers.
    """

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

    async def _load(
        self, session: AsyncSession, conflict_id: str
    ) -> tuple[ConflictItem, DestinationContext]:
        item = await get_conflict_item(session, conflict_id)
        if item is None:
            msg = f"Conflict {conflict_id} not found"
            raise ConflictResolutionError(msg)
        if item.status != CONFLICT_OPEN:
            msg = f"Conflict {conflict_id} is already {item.status}"
            raise ConflictResolutionError(msg)
        context = await get_destination_context_by_id(session, item.destination_id)
        if context is None:
            msg = f"Destination for conflict {conflict_id} no longer exists"
            raise ConflictResolutionError(msg)
        self._clone_dir(context)
        return item, context

    def _clone_dir(self, context: DestinationContext) -> Path:
        clone_dir = context.clone_dir
        if clone_dir is None:
            msg = f"No repository clone for {context.destination_path}"
            raise ConflictResolutionError(msg)
        return clone_dir

    def _load_mapping(self, context: DestinationContext) -> FileMapping:
        try:
            return load_mapping(self._clone_dir(context) / context.mapping_path)
        except (OSError, ValidationError) as exc:
            msg = f"Mapping {context.mapping_path} is unavailable: {exc}"
            raise ConflictResolutionError(msg) from exc

    def _secret_target(self, context: DestinationContext) -> tuple[str, str]:
        region = context.aws_region or self.settings.aws_region
        if not (context.aws_secret_id and region):
            msg = f"Secret store is not configured for project {context.project_id}"
            raise ConflictResolutionError(msg)
        return context.aws_secret_id, region

    async def _close(self, session: AsyncSession, item: ConflictItem) -> None:
        await resolve_conflict(session, item.id)
        for snapshot in (item.local_copy_path, item.remote_copy_path):
            if snapshot:
                remove_if_exists(Path(snapshot))

    async def resolve_keep_local(self, conflict_id: str) -> None:
        """Make the local content authoritative and publish it upstream."""
        async with self.session_factory() as session:
            item, context = await self._load(session, conflict_id)

        async with self.locks.destinations.hold(context.destination_path):
            async with self.session_factory() as session:
                item, context = await self._load(session, conflict_id)
                destination = Path(context.destination_path)
                if destination.is_file():
                    content = read_text_exact(destination)
                elif item.local_copy_path and Path(item.local_copy_path).is_file():
                    content = read_text_exact(Path(item.local_copy_path))
                    write_text_atomic(destination, content)
                else:
                    msg = f"No local content available for {context.destination_path}"
                    raise ConflictResolutionError(msg)

                mapping = self._load_mapping(context)
                template, secrets = render(parse(content), mapping.secret_keys, keep_empty=True)
                if secrets:
                    secret_id, region = self._secret_target(context)
                    await self.secret_store.upsert_secret_blob(
                        secret_id, region, mapping.to_blob_keys(secrets)
                    )

                clone_dir = self._clone_dir(context)
                async with self.locks.repositories.hold(str(clone_dir)):
                    write_text_atomic(clone_dir / context.template_path, serialize(template))
                    git = self.git_factory(clone_dir)
                    await asyncio.to_thread(
                        git.commit_all, f"SyncVault: resolve conflict in {context.template_path}"
                    )
                    if context.github_owner and context.github_repo:
                        await asyncio.to_thread(
                            git.push,
                            context.github_owner,
                            context.github_repo,
                            ref=self.settings.git_ref,
                            token=self.settings.github_token,
                        )

                await record_render_write(session, context.id, hash_content(content))
                await self._close(session, item)
        logger.info("Resolved conflict %s keeping local content", conflict_id)

    async def resolve_keep_remote(self, conflict_id: str) -> None:
        """Overwrite the destination with the remote render."""
        async with self.session_factory() as session:
            item, context = await self._load(session, conflict_id)

        async with self.locks.destinations.hold(context.destination_path):
            async with self.session_factory() as session:
                item, context = await self._load(session, conflict_id)
                if item.remote_copy_path and Path(item.remote_copy_path).is_file():
                    content = read_text_exact(Path(item.remote_copy_path))
                else:
                    content = await self._render_remote(context)

                write_text_atomic(Path(context.destination_path), content)
                await record_render_write(session, context.id, hash_content(content))
                await self._close(session, item)
        logger.info("Resolved conflict %s keeping remote content", conflict_id)

    async def _render_remote(self, context: DestinationContext) -> str:
        mapping = self._load_mapping(context)
        template_path = self._clone_dir(context) / context.template_path
        if not template_path.is_file():
            msg = f"Template {context.template_path} is missing"
            raise ConflictResolutionError(msg)
        template_text = read_text_exact(template_path)
        blob: dict[str, str] = {}
        if mapping.secret_keys:
            secret_id, region = self._secret_target(context)
            try:
                blob = await self.secret_store.get_secret_blob(secret_id, region)
            except SecretNotFoundError as exc:
                msg = f"Secret {secret_id} does not exist"
                raise ConflictResolutionError(msg) from exc
        content = hydrate(template_text, mapping.resolve_secrets(blob))
        missing = find_placeholders(content)
        if missing:
            msg = f"Remote render of {context.template_path} lacks {', '.join(sorted(missing))}"
            raise ConflictResolutionError(msg)
        return content
