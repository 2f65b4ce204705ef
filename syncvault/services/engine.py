"""Sync engine: wires the watcher, the poller and the resolver together."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from syncvault.services.conflict_service import ConflictResolver
from syncvault.services.git_service import GitService
from syncvault.services.local_watcher import LocalWatcher
from syncvault.services.locks import SyncLocks
from syncvault.services.remote_poller import RemotePoller

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from syncvault.config import Settings
    from syncvault.services.remote_poller import PollReport
    from syncvault.services.secret_store import SecretStore

logger = logging.getLogger(__name__)


def default_git_factory(settings: Settings) -> Callable[[Path], GitService]:
    """Build ``GitService`` instances carrying the configured identity and timeout."""

    def factory(repo_dir: Path) -> GitService:
        return GitService(
            repo_dir,
            timeout=settings.git_timeout_seconds,
            user_name=settings.git_user_name,
            user_email=settings.git_user_email,
        )

    return factory


class SyncEngine:
    """Owns the shared locks and both schedulers.

    The poller hands ``LocalAhead`` destinations to the watcher's handler so
    local edits the watcher missed still reach the remote.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        secret_store: SecretStore,
        git_factory: Callable[[Path], GitService] | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.secret_store = secret_store
        self.git_factory = git_factory or default_git_factory(settings)
        self.locks = SyncLocks()

        self.watcher = LocalWatcher(
            settings, session_factory, secret_store, self.locks, self.git_factory
        )
        self.poller = RemotePoller(
            settings,
            session_factory,
            secret_store,
            self.locks,
            self.git_factory,
            on_local_ahead=self.watcher.handle_local_change,
        )
        self.resolver = ConflictResolver(
            settings, session_factory, secret_store, self.locks, self.git_factory
        )

    @property
    def running(self) -> bool:
        return self.watcher.running or self.poller.running

    async def start(self) -> None:
        self.settings.ensure_data_dir()
        await self.watcher.start()
        await self.poller.start()
        logger.info("SyncVault engine started")

    async def stop(self) -> None:
        """Stop both schedulers and wait for in-flight work."""
        await self.poller.stop()
        await self.watcher.stop()
        logger.info("SyncVault engine stopped")

    async def poll_once(self) -> PollReport | None:
        return await self.poller.poll_once()

    async def resolve_keep_local(self, conflict_id: str) -> None:
        await self.resolver.resolve_keep_local(conflict_id)

    async def resolve_keep_remote(self, conflict_id: str) -> None:
        await self.resolver.resolve_keep_remote(conflict_id)
