"""Local change watcher: propagate edits of destination files upstream.

Filesystem events are debounced per path. When a path's timer fires, the
handler re-reads the destination row, drops events that echo the engine's own
writes, then re-renders the template, pushes secrets and commits the clone.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import subprocess
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from watchfiles import Change, awatch

from syncvault.exceptions import SecretStoreError
from syncvault.filesystem.atomic import read_text_exact, write_text_atomic
from syncvault.filesystem.dotenv import parse, serialize
from syncvault.filesystem.mapping import load_mapping, save_mapping
from syncvault.filesystem.template import collect_marker_keys, render
from syncvault.services.conflict_service import conflict_snapshot_paths
from syncvault.services.datetime_service import epoch_millis
from syncvault.services.metadata_service import (
    find_open_conflict_by_destination,
    get_destination_context,
    list_destination_paths,
    normalize_path,
)
from syncvault.services.state_service import hash_content, is_loop_suppressed, record_local_sync

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from syncvault.config import Settings
    from syncvault.models import Conflict
    from syncvault.services.git_service import GitService
    from syncvault.services.locks import SyncLocks
    from syncvault.services.metadata_service import DestinationContext
    from syncvault.services.secret_store import SecretStore

logger = logging.getLogger(__name__)

_WATCHED_CHANGES = frozenset({Change.added, Change.modified})


class LocalChangeResult(StrEnum):
    """Outcome of handling one local change."""

    SYNCED = "synced"
    SUPPRESSED = "suppressed"
    UNTRACKED = "untracked"
    SKIPPED = "skipped"
    FAILED = "failed"


class LocalWatcher:
    """Watches enabled destinations and propagates local edits."""

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

        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._in_flight: set[asyncio.Task[LocalChangeResult]] = set()
        self._watched_paths: frozenset[str] = frozenset()
        self._watch_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._restart = asyncio.Event()

    @property
    def watched_paths(self) -> frozenset[str]:
        return self._watched_paths

    @property
    def running(self) -> bool:
        return self._watch_task is not None

    # --- lifecycle --------------------------------------------------------------

    async def start(self) -> None:
        if self._watch_task is not None:
            return
        self._stopping.clear()
        await self.refresh_watched_paths()
        self._watch_task = asyncio.create_task(self._watch_loop(), name="syncvault-local-watch")
        self._refresh_task = asyncio.create_task(
            self._refresh_loop(), name="syncvault-local-refresh"
        )
        logger.info("Local watcher started for %d destination(s)", len(self._watched_paths))

    async def stop(self) -> None:
        """Stop scheduling new work and wait for in-flight handlers to finish."""
        if self._watch_task is None:
            return
        self._stopping.set()
        self._restart.set()
        for task in (self._refresh_task, self._watch_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._watch_task = None
        self._refresh_task = None
        for handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("Local watcher stopped")

    # --- watch registration -------------------------------------------------------

    async def refresh_watched_paths(self) -> bool:
        """Re-read enabled destination paths. Returns True if the set changed."""
        async with self.session_factory() as session:
            paths = frozenset(await list_destination_paths(session))
        if paths == self._watched_paths:
            return False
        self._watched_paths = paths
        self._restart.set()
        logger.debug("Watching %d destination path(s)", len(paths))
        return True

    async def _refresh_loop(self) -> None:
        interval = self.settings.refresh_interval_ms / 1000
        while not self._stopping.is_set():
            await asyncio.sleep(interval)
            try:
                await self.refresh_watched_paths()
            except Exception:
                logger.exception("Failed to refresh watched destination paths")

    def _watch_roots(self) -> list[str]:
        # Watch parent directories: atomic renames replace the watched inode.
        return sorted({str(Path(p).parent) for p in self._watched_paths if Path(p).parent.is_dir()})

    async def _watch_loop(self) -> None:
        while not self._stopping.is_set():
            self._restart.clear()
            roots = self._watch_roots()
            if not roots:
                await self._restart.wait()
                continue
            async for changes in awatch(
                *roots,
                stop_event=self._restart,
                recursive=False,
                debounce=50,
                raise_interrupt=False,
            ):
                for change, raw_path in changes:
                    if change not in _WATCHED_CHANGES:
                        continue
                    path = normalize_path(raw_path)
                    if path in self._watched_paths:
                        self.schedule(path)

    # --- debounce -----------------------------------------------------------------

    def schedule(self, destination_path: str) -> None:
        """(Re)start the debounce timer for a path."""
        if self._stopping.is_set():
            return
        existing = self._pending.pop(destination_path, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._pending[destination_path] = loop.call_later(
            self.settings.debounce_ms / 1000, self._fire, destination_path
        )

    def is_pending(self, destination_path: str) -> bool:
        return destination_path in self._pending

    def _fire(self, destination_path: str) -> None:
        self._pending.pop(destination_path, None)
        task = asyncio.create_task(self._run_handler(destination_path))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _run_handler(self, destination_path: str) -> LocalChangeResult:
        try:
            return await self.handle_local_change(destination_path)
        except Exception:
            logger.exception("Unexpected failure handling local change of %s", destination_path)
            return LocalChangeResult.FAILED

    async def wait_idle(self) -> None:
        """Wait until no debounce timer is pending and no handler is running."""
        while self._pending or self._in_flight:
            if self._in_flight:
                await asyncio.gather(*list(self._in_flight), return_exceptions=True)
            else:
                await asyncio.sleep(self.settings.debounce_ms / 1000 / 2 or 0.01)

    # --- handler --------------------------------------------------------------------

    async def handle_local_change(self, destination_path: str) -> LocalChangeResult:
        """Propagate the current content of a destination upstream.

        Nothing is propagated while the destination has an open conflict; the
        local snapshot of that conflict is refreshed instead so resolving with
        the local side uses the latest edit.
        """
        path = normalize_path(destination_path)
        async with self.locks.destinations.hold(path):
            async with self.session_factory() as session:
                context = await get_destination_context(session, path)
                if context is None:
                    return LocalChangeResult.UNTRACKED
                if is_loop_suppressed(
                    context.last_tool_write_at, epoch_millis(), self.settings.loop_window_ms
                ):
                    logger.debug("Ignoring self-triggered change of %s", path)
                    return LocalChangeResult.SUPPRESSED
                conflict = await find_open_conflict_by_destination(session, context.id)
                if conflict is not None:
                    return self._refresh_conflict_snapshot(path, conflict)
                clone_dir = context.clone_dir
                if clone_dir is None:
                    logger.warning("No repository clone for %s; skipping local change", path)
                    return LocalChangeResult.SKIPPED
                try:
                    content_hash = await self._propagate(context, clone_dir)
                except (OSError, ValueError, SecretStoreError) as exc:
                    logger.warning("Local change of %s not propagated: %s", path, exc)
                    return LocalChangeResult.FAILED
                except subprocess.SubprocessError as exc:
                    logger.warning("Commit of local change of %s failed: %s", path, exc)
                    return LocalChangeResult.FAILED
                await record_local_sync(session, context.id, content_hash)

        try:
            await self._push(context)
        except (subprocess.SubprocessError, OSError, ValueError) as exc:
            logger.warning("Push after local change of %s failed: %s", path, exc)
            return LocalChangeResult.FAILED
        logger.info("Synced local change %s", path)
        return LocalChangeResult.SYNCED

    def _refresh_conflict_snapshot(self, path: str, conflict: Conflict) -> LocalChangeResult:
        local_copy = (
            Path(conflict.local_copy_path)
            if conflict.local_copy_path
            else conflict_snapshot_paths(self.settings.conflicts_dir, path)[0]
        )
        try:
            write_text_atomic(local_copy, read_text_exact(Path(path)))
        except (OSError, ValueError) as exc:
            logger.warning("Could not refresh conflict snapshot of %s: %s", path, exc)
            return LocalChangeResult.FAILED
        logger.info("Conflict open for %s; local change kept out of the remote", path)
        return LocalChangeResult.SKIPPED

    async def _propagate(self, context: DestinationContext, clone_dir: Path) -> str:
        """Render the template, upload secrets and commit. Returns the content hash."""
        mapping_path = clone_dir / context.mapping_path
        if not mapping_path.is_file():
            msg = f"Mapping file missing: {mapping_path}"
            raise FileNotFoundError(msg)
        mapping = load_mapping(mapping_path)

        content = read_text_exact(Path(context.destination_path))
        document = parse(content)
        added = mapping.add_secret_keys(collect_marker_keys(document))
        template, secrets = render(document, mapping.secret_keys, keep_empty=True)

        if secrets:
            region = context.aws_region or self.settings.aws_region
            if context.aws_secret_id and region:
                await self.secret_store.upsert_secret_blob(
                    context.aws_secret_id, region, mapping.to_blob_keys(secrets)
                )
            else:
                logger.warning(
                    "Secret store not configured for %s; secrets were not uploaded",
                    context.destination_path,
                )

        async with self.locks.repositories.hold(str(clone_dir)):
            write_text_atomic(clone_dir / context.template_path, serialize(template))
            if added:
                save_mapping(mapping_path, mapping)
                logger.info(
                    "Marked %s as secret in %s", ", ".join(sorted(added)), context.mapping_path
                )
            git = self.git_factory(clone_dir)
            await asyncio.to_thread(git.commit_all, f"SyncVault: update {context.template_path}")
        return hash_content(content)

    async def _push(self, context: DestinationContext) -> None:
        clone_dir = context.clone_dir
        if clone_dir is None or not (context.github_owner and context.github_repo):
            return
        async with self.locks.repositories.hold(str(clone_dir)):
            git = self.git_factory(clone_dir)
            await asyncio.to_thread(
                git.push,
                context.github_owner,
                context.github_repo,
                ref=self.settings.git_ref,
                token=self.settings.github_token,
            )
