"""
Where program sources come from.
"""
import asyncio
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from execution_engine.core.config import settings
from execution_engine.core.exceptions import (
    ProgramNotFoundError,
    VersionNotFoundError,
)
from execution_engine.core.paths import require_segment


class ProjectSourceProvider(ABC):
    """Resolves program versions and copies their sources to disk."""

    @abstractmethod
    async def resolve_version(self, program_id: str, version_id: Optional[str] = None) -> str:
        """
        Resolve a version identifier.

        Args:
            program_id: Program identifier
            version_id: Requested version; None means the current version

        Returns:
            Concrete version identifier

        Raises:
            ProgramNotFoundError: If the program does not exist
            VersionNotFoundError: If the version does not exist
        """
        pass

    @abstractmethod
    async def materialize(self, program_id: str, version_id: str, destination: str) -> str:
        """
        Write the version's files under ``destination``.

        Returns:
            The destination directory
        """
        pass


class LocalSourceProvider(ProjectSourceProvider):
    """Reads ``<root>/<program_id>/<version_id>/`` from the local filesystem."""

    def __init__(self, root: str = None):
        self.root = Path(root or settings.EXECUTION_SOURCE_ROOT)

    def _segment(self, value: str) -> str:
        return require_segment(value)

    def get_program_path(self, program_id: str) -> Path:
        return self.root / self._segment(program_id)

    async def resolve_version(self, program_id: str, version_id: Optional[str] = None) -> str:
        program_path = self.get_program_path(program_id)
        if not program_path.is_dir():
            raise ProgramNotFoundError(program_id)

        if version_id:
            if not (program_path / self._segment(version_id)).is_dir():
                raise VersionNotFoundError(version_id)
            return version_id

        # Current version is the most recently written one
        versions = [p for p in program_path.iterdir() if p.is_dir() and not p.name.startswith(".")]
        if not versions:
            raise VersionNotFoundError(f"{program_id}/current")
        versions.sort(key=lambda p: (p.stat().st_mtime, p.name))
        return versions[-1].name

    async def materialize(self, program_id: str, version_id: str, destination: str) -> str:
        source = self.get_program_path(program_id) / self._segment(version_id)
        if not source.is_dir():
            raise VersionNotFoundError(version_id)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True),
        )
        return destination
