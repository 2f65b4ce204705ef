"""Shared test fixtures for SyncVault."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from syncvault.config import Settings
from syncvault.database import create_engine, init_schema
from syncvault.exceptions import SecretNotFoundError, SecretStoreError
from syncvault.services.engine import SyncEngine, default_git_factory
from syncvault.services.git_service import GitService
from syncvault.services.tracking_service import TrackingService

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable
    from pathlib import Path

    from syncvault.services.tracking_service import AddFileResult

TEST_REGION = "us-east-1"
TEST_OWNER = "acme"
TEST_REPO = "envs"


class FakeSecretStore:
    """In-memory secret store with the same merge semantics as the AWS backend."""

    def __init__(self) -> None:
        self.blobs: dict[tuple[str, str], dict[str, str]] = {}
        self.fail_reads = False
        self.fail_writes = False
        self.upserts: list[tuple[str, dict[str, str]]] = []

    async def get_secret_blob(self, secret_id: str, region: str) -> dict[str, str]:
        if self.fail_reads:
            raise SecretStoreError("secret store unavailable")
        blob = self.blobs.get((secret_id, region))
        if blob is None:
            raise SecretNotFoundError(f"Secret {secret_id} not found in {region}")
        return dict(blob)

    async def upsert_secret_blob(self, secret_id: str, region: str, values: dict[str, str]) -> None:
        if self.fail_writes:
            raise SecretStoreError("secret store unavailable")
        self.blobs.setdefault((secret_id, region), {}).update(values)
        self.upserts.append((secret_id, dict(values)))


@dataclass
class TrackedEnv:
    """A local ``.env`` file tracked by a project linked to a bare remote."""

    path: Path
    result: AddFileResult
    remote: Path

    @property
    def secret_id(self) -> str:
        return f"syncvault/local/{self.result.project_id}"


def _git(*args: str, cwd: Path) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths and short timers."""
    return Settings(
        _env_file=None,
        debug=True,
        data_dir=tmp_path / "data",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'syncvault.db'}",
        poll_interval_ms=100,
        debounce_ms=50,
        loop_window_ms=800,
        refresh_interval_ms=100,
        aws_region=TEST_REGION,
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine, _ = create_engine(test_settings)
    await init_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(
    test_settings: Settings, db_engine: AsyncEngine
) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def secret_store() -> FakeSecretStore:
    return FakeSecretStore()


@pytest.fixture
def git_factory(test_settings: Settings) -> Callable[[Path], GitService]:
    return default_git_factory(test_settings)


@pytest.fixture
def engine(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    secret_store: FakeSecretStore,
    git_factory: Callable[[Path], GitService],
) -> SyncEngine:
    test_settings.ensure_data_dir()
    return SyncEngine(test_settings, session_factory, secret_store, git_factory)


@pytest.fixture
def tracking(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    secret_store: FakeSecretStore,
    git_factory: Callable[[Path], GitService],
    engine: SyncEngine,
) -> TrackingService:
    return TrackingService(test_settings, session_factory, secret_store, engine.locks, git_factory)


@pytest.fixture
def bare_remote(tmp_path: Path) -> Path:
    """An empty bare repository standing in for the GitHub remote."""
    remote = tmp_path / "remote.git"
    remote.mkdir()
    _git("init", "--bare", cwd=remote)
    _git("symbolic-ref", "HEAD", "refs/heads/main", cwd=remote)
    return remote


@pytest.fixture
def app_repo(tmp_path: Path) -> Path:
    """A local application work tree holding the ``.env`` file to track."""
    repo = tmp_path / "app"
    repo.mkdir()
    _git("init", cwd=repo)
    return repo.resolve()


@pytest.fixture
def remote_editor(tmp_path: Path, bare_remote: Path) -> Callable[[str, str], None]:
    """Return a function that commits a template change from another machine."""
    other = GitService(tmp_path / "other-machine")

    def edit(template_path: str, content: str) -> None:
        other.ensure_clone(str(bare_remote))
        other.pull("main")
        target = other.repo_dir / template_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        other.commit_all(f"edit {template_path}")
        other.push(ref="main")

    return edit


@pytest.fixture
async def tracked_env(
    app_repo: Path, bare_remote: Path, tracking: TrackingService
) -> TrackedEnv:
    """Track ``app/.env`` and publish its project to the bare remote."""
    env_path = app_repo / ".env"
    env_path.write_text("API_KEY=abc123\nPORT=8080\n", encoding="utf-8")
    result = await tracking.add_file(env_path)
    await tracking.link_remote(
        result.project_id, TEST_OWNER, TEST_REPO, clone_url=str(bare_remote)
    )
    return TrackedEnv(path=env_path, result=result, remote=bare_remote)
