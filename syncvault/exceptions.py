"""Engine-level exception types.

Convention:
- ``SyncVaultError`` subclasses are raised for conditions the engine itself
  detects (unsupported files, unavailable conflict context, secret-store
  failures).  Schedulers catch them per unit of work and log a warning.
- Git failures are not wrapped: ``GitService`` lets
  ``subprocess.CalledProcessError`` / ``subprocess.TimeoutExpired`` propagate
  so callers can inspect the exit code and stderr.
- File system failures surface as ``OSError``.
- A detected conflict is *not* an exception; it is persisted as a
  ``Conflict`` row and left for an explicit resolution.
"""

from __future__ import annotations


class SyncVaultError(Exception):
    """Base class for engine errors."""


class UnsupportedFileTypeError(SyncVaultError):
    """Raised when asked to track a file that is not a ``.env`` file."""


class SecretStoreError(SyncVaultError):
    """Raised when the remote secret store cannot be read or written."""


class SecretNotFoundError(SecretStoreError):
    """Raised when the requested secret blob does not exist."""


class ConflictResolutionError(SyncVaultError):
    """Raised when a conflict cannot be resolved with the available context.

    The conflict row is left open whenever this is raised.
    """


class IncompleteRenderError(SyncVaultError):
    """Raised when a hydrated template still contains placeholders."""

    def __init__(self, template_path: str, missing: set[str]) -> None:
        self.template_path = template_path
        self.missing = missing
        keys = ", ".join(sorted(missing))
        super().__init__(f"Missing secret values for {template_path}: {keys}")
