"""Repository-side metadata files: file mappings and project identity.

Layout inside a project clone::

    templates/<relative-path>.template
    syncvault/files/<fileId>.json
    syncvault/project.json
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from syncvault.filesystem.atomic import read_text_exact, write_text_atomic

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

MAPPINGS_DIR = PurePosixPath("syncvault") / "files"
PROJECT_METADATA_PATH = PurePosixPath("syncvault") / "project.json"
TEMPLATES_DIR = PurePosixPath("templates")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SecretRef(_CamelModel):
    """Where a local key's value lives inside the secret blob."""

    json_key: str = Field(alias="jsonKey")


class FileMapping(_CamelModel):
    """Mapping file stored next to a template."""

    file_id: str = Field(alias="fileId")
    template_path: str = Field(alias="templatePath")
    type: str = "dotenv"
    secrets: dict[str, SecretRef] = Field(default_factory=dict)

    @property
    def secret_keys(self) -> set[str]:
        return set(self.secrets)

    def add_secret_keys(self, keys: Iterable[str]) -> set[str]:
        """Add keys that are not mapped yet. Returns the keys that were added.

        Existing keys are never removed or remapped.
        """
        added = {key for key in keys if key not in self.secrets}
        for key in sorted(added):
            self.secrets[key] = SecretRef(json_key=key)
        return added

    def to_blob_keys(self, values: dict[str, str]) -> dict[str, str]:
        """Translate local keys to secret-blob keys."""
        return {
            (self.secrets[key].json_key if key in self.secrets else key): value
            for key, value in values.items()
        }

    def resolve_secrets(self, blob: dict[str, str]) -> dict[str, str]:
        """Pick this file's values out of a secret blob, keyed by local key."""
        return {
            key: blob[ref.json_key] for key, ref in self.secrets.items() if ref.json_key in blob
        }


class AwsMetadata(_CamelModel):
    region: str | None = None
    secret_id: str | None = Field(default=None, alias="secretId")


class ProjectMetadata(_CamelModel):
    """Project identity file shared through the repository."""

    project_id: str | None = Field(default=None, alias="projectId")
    local_repo_root: str | None = Field(default=None, alias="localRepoRoot")
    created_at: str | None = Field(default=None, alias="createdAt")
    aws: AwsMetadata = Field(default_factory=AwsMetadata)


def build_mapping(
    file_id: str, template_path: str, file_type: str, secret_keys: Iterable[str]
) -> FileMapping:
    mapping = FileMapping(file_id=file_id, template_path=template_path, type=file_type)
    mapping.add_secret_keys(secret_keys)
    return mapping


def template_path_for(relative_posix_path: str) -> str:
    return str(TEMPLATES_DIR / f"{relative_posix_path}.template")


def mapping_path_for(file_id: str) -> str:
    return str(MAPPINGS_DIR / f"{file_id}.json")


def serialize_mapping(mapping: FileMapping) -> str:
    return mapping.model_dump_json(by_alias=True, indent=2) + "\n"


def load_mapping(path: Path) -> FileMapping:
    """Load a mapping file.

    Raises OSError when unreadable and pydantic.ValidationError when malformed.
    """
    return FileMapping.model_validate_json(read_text_exact(path))


def save_mapping(path: Path, mapping: FileMapping) -> None:
    write_text_atomic(path, serialize_mapping(mapping))


def list_mappings(clone_path: Path) -> list[FileMapping]:
    """Load every mapping in a clone, skipping unreadable ones with a warning."""
    files_dir = clone_path / MAPPINGS_DIR
    if not files_dir.is_dir():
        return []
    mappings: list[FileMapping] = []
    for entry in sorted(files_dir.glob("*.json")):
        try:
            mappings.append(load_mapping(entry))
        except (OSError, ValidationError) as exc:
            logger.warning("Skipping unreadable mapping %s: %s", entry, exc)
    return mappings


def load_project_metadata(clone_path: Path) -> ProjectMetadata | None:
    """Load ``syncvault/project.json``; None when absent or malformed."""
    meta_path = clone_path / PROJECT_METADATA_PATH
    if not meta_path.is_file():
        return None
    try:
        return ProjectMetadata.model_validate_json(read_text_exact(meta_path))
    except (OSError, ValidationError) as exc:
        logger.warning("Ignoring unreadable project metadata %s: %s", meta_path, exc)
        return None


def ensure_project_metadata(clone_path: Path, metadata: ProjectMetadata) -> bool:
    """Write ``syncvault/project.json`` unless it exists. Returns True if written."""
    meta_path = clone_path / PROJECT_METADATA_PATH
    if meta_path.exists():
        return False
    write_text_atomic(
        meta_path, metadata.model_dump_json(by_alias=True, indent=2, exclude_none=True) + "\n"
    )
    return True
