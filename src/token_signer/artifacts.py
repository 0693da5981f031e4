from __future__ import annotations

import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .exceptions import TokenConfigurationError

_logger = logging.getLogger("token_signer.artifacts")

ARTIFACT_PREFIX = "usb_token_"


@dataclass(frozen=True)
class TemporaryArtifact:
    """A short-lived file holding a digest or raw signature bytes."""

    path: Path

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


class ArtifactScope:
    """Tracks the artifacts created for one signing cycle."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory
        self._artifacts: list[TemporaryArtifact] = []

    @property
    def artifacts(self) -> tuple[TemporaryArtifact, ...]:
        return tuple(self._artifacts)

    def write(self, data: bytes, suffix: str = ".tmp") -> TemporaryArtifact:
        fd, name = tempfile.mkstemp(prefix=ARTIFACT_PREFIX, suffix=suffix, dir=self._directory)
        artifact = TemporaryArtifact(Path(name))
        self._artifacts.append(artifact)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        return artifact

    def cleanup(self) -> None:
        while self._artifacts:
            artifact = self._artifacts.pop()
            try:
                artifact.path.unlink()
                _logger.debug("Removed temporary artifact path=%s", artifact.path)
            except FileNotFoundError:
                pass
            except OSError:
                _logger.exception("Failed to remove temporary artifact path=%s", artifact.path)


class ArtifactStore:
    """Directory holding temporary artifacts for in-flight requests."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def ensure(self) -> None:
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise TokenConfigurationError(
                f"Cannot create temporary artifact directory: {self._directory}"
            ) from exc
        if not os.access(self._directory, os.W_OK):
            raise TokenConfigurationError(
                f"Temporary artifact directory is not writable: {self._directory}"
            )

    @contextmanager
    def scope(self) -> Iterator[ArtifactScope]:
        scope = ArtifactScope(self._directory)
        try:
            yield scope
        finally:
            scope.cleanup()

    def leftovers(self) -> list[Path]:
        if not self._directory.is_dir():
            return []
        return sorted(self._directory.glob(f"{ARTIFACT_PREFIX}*"))

    def purge(self, older_than: float | None = None) -> int:
        """Remove leftover artifacts, only those last modified ``older_than`` seconds ago if given."""
        cutoff = None if older_than is None else time.time() - older_than
        removed = 0
        for path in self.leftovers():
            try:
                if cutoff is not None and path.stat().st_mtime > cutoff:
                    continue
                path.unlink()
                removed += 1
            except FileNotFoundError:
                pass
            except OSError:
                _logger.warning("Failed to purge temporary artifact path=%s", path)
        if removed:
            _logger.info("Purged temporary artifacts count=%d", removed)
        return removed
