"""SQLAlchemy ORM models for SyncVault."""

from syncvault.models.base import Base
from syncvault.models.conflict import CONFLICT_OPEN, CONFLICT_RESOLVED, Conflict
from syncvault.models.destination import Destination
from syncvault.models.file import TrackedFile
from syncvault.models.project import Project

__all__ = [
    "CONFLICT_OPEN",
    "CONFLICT_RESOLVED",
    "Base",
    "Conflict",
    "Destination",
    "Project",
    "TrackedFile",
]
