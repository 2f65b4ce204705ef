"""Remote poller: pull template repositories and render them into destinations.

Each pass walks every project that has a remote. The clone is updated, each
mapped template is hydrated with the project's secret blob, and the fresh
render is compared against every enabled destination of that file to decide
between doing nothing, overwriting, recording a conflict or handing the path
to the local watcher.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from syncvault.exceptions import SecretNotFoundError, SyncVaultError
from syncvault.filesystem.atomic import read_text_exact, write_text_atomic
from syncvault.filesystem.mapping import list_mappings, load_project_metadata
from syncvault.filesystem.template import find_placeholders, hydrate
from syncvault.services.conflict_service import conflict_snapshot_paths
from syncvault.services.metadata_service import (
    create_conflict,
    find_open_conflict_by_destination,
    get_destination_context_by_id,
    list_destinations_by_file,
    list_projects,
    update_project_fields,
)
from syncvault.services.state_service import (
    DestinationState,
    classify_destination,
    hash_content,
    needs_hash_refresh,
    record_in_sync,
    record_render_write,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from syncvault.config import Settings
    from syncvault.filesystem.mapping import FileMapping
    from syncvault.models import Project
    from syncvault.services.git_service import GitService
    from syncvault.services.locks import SyncLocks
    from syncvault.services.metadata_service import DestinationContext
    from syncvault.services.secret_store import SecretStore

logger = logging.getLogger(__name__)

# UnicodeDecodeError and pydantic ValidationError are ValueErrors.
_PROJECT_ERRORS = (subprocess.SubprocessError, OSError, ValueError, SyncVaultError)


@dataclass
class PollReport:
    """What one polling pass did."""

    projects: int = 0
    failed_projects: list[str] = field(default_factory=list)
    written: list[str] = field(default_factory=list)
    in_sync: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    local_ahead: list[str] = field(default_factory=list)
    incomplete: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RenderedFile:
    """A template hydrated with the current secret blob."""

    file_id: str
    template_path: str
    content: str
    content_hash: str


class RemotePoller:
    """Periodically reconciles destinations with their remote templates."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        secret_store: SecretStore,
        locks: SyncLocks,
        git_factory: Callable[[Path], GitService],
        on_local_ahead: Callable[[str], Awaitable[object]] | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.secret_store = secret_store
        self.locks = locks
        self.git_factory = git_factory
        self.on_local_ahead = on_local_ahead

        self._busy = False
        self._tick_task: asyncio.Task[None] | None = None
        self._pass_task: asyncio.Task[PollReport | None] | None = None

    @property
    def running(self) -> bool:
        return self._tick_task is not None

    @property
    def busy(self) -> bool:
        return self._busy

    # --- lifecycle --------------------------------------------------------------

    async def start(self) -> None:
        if self._tick_task is not None:
            return
        self._tick_task = asyncio.create_task(self._tick_loop(), name="syncvault-remote-poll")
        logger.info("Remote poller started (interval %d ms)", self.settings.poll_interval_ms)

    async def stop(self) -> None:
        """Stop ticking and wait for a pass in flight to finish."""
        if self._tick_task is None:
            return
        self._tick_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._tick_task
        self._tick_task = None
        if self._pass_task is not None and not self._pass_task.done():
            await asyncio.gather(self._pass_task, return_exceptions=True)
        self._pass_task = None
        logger.info("Remote poller stopped")

    async def _tick_loop(self) -> None:
        interval = self.settings.poll_interval_ms / 1000
        while True:
            if self._pass_task is None or self._pass_task.done():
                self._pass_task = asyncio.create_task(self._guarded_pass())
            else:
                logger.debug("Previous poll still running; skipping tick")
            await asyncio.sleep(interval)

    async def _guarded_pass(self) -> PollReport | None:
        try:
            return await self.poll_once()
        except Exception:
            logger.exception("Remote poll pass failed")
            return None

    # --- pass -------------------------------------------------------------------

    async def poll_once(self) -> PollReport | None:
        """Run one pass over all remote-backed projects.

        Returns None without doing anything when a pass is already running.
        """
        if self._busy:
            logger.debug("Poll pass already in flight")
            return None
        self._busy = True
        try:
            report = PollReport()
            async with self.session_factory() as session:
                projects = await list_projects(session)
            for project in projects:
                clone_url = project.github_clone_url
                if not clone_url:
                    logger.debug("Project %s has no remote; not polling", project.id)
                    continue
                report.projects += 1
                try:
                    await self._sync_project(project, clone_url, report)
                except _PROJECT_ERRORS as exc:
                    logger.warning("Polling project %s failed: %s", project.id, exc)
                    report.failed_projects.append(project.id)
            return report
        finally:
            self._busy = False

    async def _sync_project(self, project: Project, clone_url: str, report: PollReport) -> None:
        clone_dir = (
            Path(project.local_clone_path)
            if project.local_clone_path
            else self.settings.repos_dir / project.id
        )
        git = self.git_factory(clone_dir)
        async with self.locks.repositories.hold(str(clone_dir)):
            await asyncio.to_thread(git.ensure_clone, clone_url)
            await asyncio.to_thread(git.pull, self.settings.git_ref)
            metadata = load_project_metadata(clone_dir)
            mappings = list_mappings(clone_dir)
            templates = {m.file_id: self._read_template(clone_dir, m) for m in mappings}

        if not project.local_clone_path:
            async with self.session_factory() as session:
                await update_project_fields(session, project.id, local_clone_path=str(clone_dir))

        region = (
            (metadata.aws.region if metadata else None)
            or project.aws_region
            or self.settings.aws_region
        )
        secret_id = (metadata.aws.secret_id if metadata else None) or project.aws_secret_id
        blob = await self._fetch_blob(secret_id, region, project.id)

        for mapping in mappings:
            template_text = templates.get(mapping.file_id)
            if template_text is None:
                continue
            rendered = self._render(mapping, template_text, blob)
            if rendered is None:
                report.incomplete.append(mapping.template_path)
                continue
            await self._apply_to_destinations(rendered, report)

    def _read_template(self, clone_dir: Path, mapping: FileMapping) -> str | None:
        path = clone_dir / mapping.template_path
        if not path.is_file():
            logger.warning("Template %s is missing from %s", mapping.template_path, clone_dir)
            return None
        return read_text_exact(path)

    async def _fetch_blob(
        self, secret_id: str | None, region: str | None, project_id: str
    ) -> dict[str, str]:
        if not (secret_id and region):
            logger.debug("Project %s has no secret store configured", project_id)
            return {}
        try:
            return await self.secret_store.get_secret_blob(secret_id, region)
        except SecretNotFoundError:
            logger.debug("Secret %s does not exist yet; rendering without secrets", secret_id)
            return {}

    def _render(
        self, mapping: FileMapping, template_text: str, blob: dict[str, str]
    ) -> RenderedFile | None:
        content = hydrate(template_text, mapping.resolve_secrets(blob))
        missing = find_placeholders(content)
        if missing:
            logger.warning(
                "Skipping %s: no secret values for %s",
                mapping.template_path,
                ", ".join(sorted(missing)),
            )
            return None
        return RenderedFile(
            file_id=mapping.file_id,
            template_path=mapping.template_path,
            content=content,
            content_hash=hash_content(content),
        )

    async def _apply_to_destinations(self, rendered: RenderedFile, report: PollReport) -> None:
        async with self.session_factory() as session:
            destinations = [
                (d.id, d.destination_path)
                for d in await list_destinations_by_file(session, rendered.file_id)
            ]
        for destination_id, destination_path in destinations:
            try:
                state = await self.apply_render(destination_id, destination_path, rendered)
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Could not apply render to %s: %s", destination_path, exc)
                continue
            if state is None:
                continue
            if state is DestinationState.NEEDS_RENDER_WRITE:
                report.written.append(destination_path)
            elif state is DestinationState.IN_SYNC:
                report.in_sync.append(destination_path)
            elif state is DestinationState.CONFLICT:
                report.conflicts.append(destination_path)
            elif state is DestinationState.LOCAL_AHEAD:
                report.local_ahead.append(destination_path)
                if self.on_local_ahead is not None:
                    await self.on_local_ahead(destination_path)

    async def apply_render(
        self, destination_id: str, destination_path: str, rendered: RenderedFile
    ) -> DestinationState | None:
        """Decide and apply the outcome for one destination under its lock.

        A missing destination file is written as if it needed a render write.
        Returns None when the destination disappeared or was disabled.
        """
        async with self.locks.destinations.hold(destination_path):
            async with self.session_factory() as session:
                context = await get_destination_context_by_id(session, destination_id)
                if context is None or not context.is_enabled:
                    return None
                path = Path(context.destination_path)
                if not path.exists():
                    write_text_atomic(path, rendered.content)
                    await record_render_write(session, context.id, rendered.content_hash)
                    logger.info("Created %s from %s", path, rendered.template_path)
                    return DestinationState.NEEDS_RENDER_WRITE

                current = read_text_exact(path)
                current_hash = hash_content(current)
                state = classify_destination(
                    current_hash,
                    context.last_local_hash,
                    context.last_render_hash,
                    rendered.content_hash,
                )
                if state is DestinationState.IN_SYNC:
                    if needs_hash_refresh(
                        context.last_local_hash, context.last_render_hash, current_hash
                    ):
                        await record_in_sync(session, context.id, current_hash)
                elif state is DestinationState.NEEDS_RENDER_WRITE:
                    write_text_atomic(path, rendered.content)
                    await record_render_write(session, context.id, rendered.content_hash)
                    logger.info("Updated %s from %s", path, rendered.template_path)
                elif state is DestinationState.CONFLICT:
                    await self._record_conflict(session, context, current, rendered.content)
                return state

    async def _record_conflict(
        self,
        session: AsyncSession,
        context: DestinationContext,
        local_content: str,
        remote_content: str,
    ) -> None:
        local_copy, remote_copy = conflict_snapshot_paths(
            self.settings.conflicts_dir, context.destination_path
        )
        write_text_atomic(local_copy, local_content)
        write_text_atomic(remote_copy, remote_content)
        if await find_open_conflict_by_destination(session, context.id) is not None:
            logger.debug("Conflict for %s already open; snapshots refreshed", context.destination_path)
            return
        await create_conflict(
            session,
            destination_id=context.id,
            local_copy_path=str(local_copy),
            remote_copy_path=str(remote_copy),
        )
        logger.warning(
            "Conflict detected for %s: local edits and remote changes differ",
            context.destination_path,
        )
