"""Workspace manager — one disposable directory per job, released on every exit path."""

from __future__ import annotations

import shutil
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from cincout.config import CinCoutConfig
from cincout.errors import WorkspaceError
from cincout.models import Language, Workspace
from cincout.utils.logging import get_logger

logger = get_logger(__name__)


class WorkspaceManager:
    """Allocates uniquely named job directories under a shared temporary root.

    Names carry a random UUID suffix, so concurrent jobs never collide and no
    locking is needed: a directory is owned by exactly one job.
    """

    def __init__(self, config: CinCoutConfig) -> None:
        """Initialize the manager.

        Args:
            config: Configuration providing the temp root and directory prefix.
        """
        self._root = Path(config.workspace_root)
        self._prefix = config.workspace_prefix

    @property
    def root(self) -> Path:
        return self._root

    def create(self, lang: Language, code: str | None = None) -> Workspace:
        """Allocate a fresh workspace and optionally write the source file.

        Args:
            lang: Language, which decides the source file extension.
            code: Source text to write into the workspace. Never placed on a command line.

        Returns:
            The new Workspace.

        Raises:
            WorkspaceError: If the directory cannot be created or the source cannot be written.
        """
        directory = self._root / f"{self._prefix}{uuid.uuid4().hex}"
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            directory.mkdir(mode=0o700)
        except OSError as exc:
            raise WorkspaceError(f"Failed to create workspace: {exc.strerror or exc}") from exc

        workspace = Workspace.layout(directory, lang)
        logger.debug("workspace_created", name=directory.name)

        if code is not None:
            try:
                workspace.source_file.write_text(code, encoding="utf-8")
            except OSError as exc:
                self.destroy(workspace)
                raise WorkspaceError(f"Failed to write source file: {exc.strerror or exc}") from exc

        return workspace

    def destroy(self, workspace: Workspace | None) -> None:
        """Recursively remove a workspace. Safe to call repeatedly or on a partial workspace.

        Args:
            workspace: Workspace to remove; None is ignored.

        Raises:
            WorkspaceError: If the directory exists but cannot be removed.
        """
        if workspace is None:
            return
        directory = workspace.directory
        if not directory.exists():
            return
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("workspace_remove_failed", name=directory.name, error=str(exc))
            raise WorkspaceError(f"Failed to remove workspace: {exc.strerror or exc}") from exc
        logger.debug("workspace_destroyed", name=directory.name)

    @contextmanager
    def scoped(self, lang: Language, code: str | None = None) -> Iterator[Workspace]:
        """Scoped acquisition: the workspace is destroyed however the block exits.

        Cancellation of the enclosing task propagates through here as well, so a
        session disconnect releases the workspace of its in-flight job.

        Args:
            lang: Job language.
            code: Source text to write.

        Yields:
            The live Workspace.
        """
        workspace = self.create(lang, code)
        try:
            yield workspace
        finally:
            self.destroy(workspace)

    def active(self) -> list[Path]:
        """List workspace directories currently present under the root."""
        if not self._root.exists():
            return []
        return sorted(p for p in self._root.glob(f"{self._prefix}*") if p.is_dir())
