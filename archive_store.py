"""
Archive store collaborator.

The rotation logic only needs three primitives from the store: list archive
names, create one archive from a directory and delete one archive by name.
``BorgStore`` provides them by running the archive tool's CLI; tests swap in
an in-memory store implementing the same protocol.
"""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Protocol, Sequence


class StoreUnavailableError(Exception):
    """Raised when a store call fails or the archive tool cannot be run."""


class ArchiveStore(Protocol):
    def list_archives(self) -> List[str]:
        ...

    def create_archive(self, name: str, path: str) -> None:
        ...

    def delete_archive(self, name: str) -> None:
        ...


class BorgStore:
    def __init__(
        self,
        tool: Sequence[str],
        *,
        repository: Optional[str] = None,
        create_options: Sequence[str] = (),
        source_root: Path = Path("/"),
    ) -> None:
        if not tool:
            raise ValueError("Archive tool invocation must not be empty.")
        self.tool = list(tool)
        self.repository = repository
        self.create_options = list(create_options)
        self.source_root = source_root

    def archive_location(self, name: str) -> str:
        return f"{self.repository or ''}::{name}"

    def list_archives(self) -> List[str]:
        command = self.tool + ["list", "--short"]
        if self.repository:
            command.append(self.repository)
        output = self._run(command)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def create_archive(self, name: str, path: str) -> None:
        relative_path = path.lstrip("/") or "."
        command = (
            self.tool
            + ["create"]
            + self.create_options
            + [self.archive_location(name), relative_path]
        )
        self._run(command, cwd=self.source_root)

    def delete_archive(self, name: str) -> None:
        self._run(self.tool + ["delete", self.archive_location(name)])

    def _run(self, command: List[str], *, cwd: Optional[Path] = None) -> str:
        logging.debug("Running %s", " ".join(command))
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as error:
            raise StoreUnavailableError(
                f"Could not run {command[0]}: {error}"
            ) from error

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise StoreUnavailableError(
                f"{' '.join(command[:2])} exited with status {result.returncode}"
                + (f": {stderr}" if stderr else "")
            )
        return result.stdout or ""
