"""Destination state model: sync decisions and destination hash bookkeeping.

``classify_destination`` is the only place that decides between a safe
render write, local propagation and a conflict. The ``record_*`` helpers are
the only writers of destination hash and timestamp fields; each writes all
of its fields in one statement, after the corresponding file write.
"""

from __future__ import annotations

import hashlib
from enum import StrEnum
from typing import TYPE_CHECKING

from syncvault.services.datetime_service import epoch_millis
from syncvault.services.metadata_service import update_destination_fields

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


class DestinationState(StrEnum):
    """Relationship between a destination file and its fresh remote render."""

    IN_SYNC = "in_sync"
    NEEDS_RENDER_WRITE = "needs_render_write"
    LOCAL_AHEAD = "local_ahead"
    CONFLICT = "conflict"


def hash_content(content: str) -> str:
    """Compute the SHA-256 hex digest of text content (UTF-8)."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def classify_destination(
    current_hash: str,
    last_local_hash: str | None,
    last_render_hash: str | None,
    fresh_hash: str,
) -> DestinationState:
    """Classify a destination from four content hashes.

    The baseline is ``last_render_hash``, the content the engine last
    rendered into the file. A destination that was never rendered (tracked by
    a local add) uses ``last_local_hash`` instead. ``last_local_hash`` never
    counts as clean once a render exists, so content propagated by the
    watcher but not yet re-rendered conflicts with a concurrent remote edit.

    ==================  ===================  =====================
    current == fresh    baseline equals      result
    ==================  ===================  =====================
    yes                 any                  IN_SYNC
    no                  current              NEEDS_RENDER_WRITE
    no                  fresh                LOCAL_AHEAD
    no                  neither              CONFLICT
    ==================  ===================  =====================
    """
    if current_hash == fresh_hash:
        return DestinationState.IN_SYNC
    baseline = last_render_hash if last_render_hash is not None else last_local_hash
    if baseline is None:
        return DestinationState.CONFLICT
    if current_hash == baseline:
        return DestinationState.NEEDS_RENDER_WRITE
    if fresh_hash == baseline:
        return DestinationState.LOCAL_AHEAD
    return DestinationState.CONFLICT


def is_loop_suppressed(last_tool_write_at: int | None, now_ms: int, window_ms: int) -> bool:
    """True while a filesystem event may still be the echo of our own write."""
    if last_tool_write_at is None:
        return False
    return now_ms - last_tool_write_at < window_ms


def needs_hash_refresh(
    last_local_hash: str | None, last_render_hash: str | None, content_hash: str
) -> bool:
    return last_local_hash != content_hash or last_render_hash != content_hash


async def record_render_write(
    session: AsyncSession, destination_id: str, content_hash: str
) -> int:
    """Record that the engine wrote ``content_hash`` to the destination.

    Both hashes converge and ``last_tool_write_at`` is stamped so the local
    watcher ignores the echo of this write. Returns the stamp.
    """
    stamp = epoch_millis()
    await update_destination_fields(
        session,
        destination_id,
        last_local_hash=content_hash,
        last_render_hash=content_hash,
        last_tool_write_at=stamp,
    )
    return stamp


async def record_in_sync(session: AsyncSession, destination_id: str, content_hash: str) -> None:
    """Converge both hashes on content that is already on disk (no write happened)."""
    await update_destination_fields(
        session,
        destination_id,
        last_local_hash=content_hash,
        last_render_hash=content_hash,
    )


async def record_local_sync(session: AsyncSession, destination_id: str, content_hash: str) -> None:
    """Record that local content was propagated to the template and secret store."""
    await update_destination_fields(session, destination_id, last_local_hash=content_hash)


async def set_enabled(session: AsyncSession, destination_id: str, enabled: bool) -> None:
    await update_destination_fields(session, destination_id, is_enabled=enabled)
