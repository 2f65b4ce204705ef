"""Engine entry point: logging, wiring and the long-running process."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING

from syncvault.config import Settings
from syncvault.database import create_engine, init_schema
from syncvault.services.engine import SyncEngine, default_git_factory
from syncvault.services.secret_store import AwsSecretsManagerStore
from syncvault.services.tracking_service import TrackingService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from syncvault.services.secret_store import SecretStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("watchfiles").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)


@dataclass
class Application:
    """Everything one process needs, built from settings."""

    settings: Settings
    db_engine: AsyncEngine
    engine: SyncEngine
    tracking: TrackingService

    async def close(self) -> None:
        await self.db_engine.dispose()


async def build_application(
    settings: Settings, secret_store: SecretStore | None = None
) -> Application:
    """Create the data directory, the schema and the engine objects."""
    settings.ensure_data_dir()
    db_engine, session_factory = create_engine(settings)
    await init_schema(db_engine)
    store = secret_store or AwsSecretsManagerStore(profile=settings.aws_profile)
    git_factory = default_git_factory(settings)
    engine = SyncEngine(settings, session_factory, store, git_factory)
    tracking = TrackingService(settings, session_factory, store, engine.locks, git_factory)
    return Application(settings=settings, db_engine=db_engine, engine=engine, tracking=tracking)


async def run_engine(settings: Settings) -> None:
    """Run the watcher and poller until SIGINT or SIGTERM."""
    app = await build_application(settings)
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_requested.set)

    await app.engine.start()
    try:
        await stop_requested.wait()
    finally:
        logger.info("Shutting down")
        await app.engine.stop()
        await app.close()


def main() -> None:
    settings = Settings()
    _configure_logging(settings.debug)
    asyncio.run(run_engine(settings))


if __name__ == "__main__":
    main()
