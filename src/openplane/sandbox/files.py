from __future__ import annotations

import fnmatch
import logging
import os
from pathlib import Path

from openplane.models import WorkspacePolicy
from openplane.paths import path_key
from openplane.sandbox.adapters import FileAdapter
from openplane.sandbox.commands import ToolCommand, ToolOperation
from openplane.sandbox.policy import AccessPolicy, PolicyViolationError

logger = logging.getLogger(__name__)


def _ensure_allowed(allowed: bool, message: str) -> None:
    if not allowed:
        logger.info("Policy denied: %s", message)
        raise PolicyViolationError(message)


class FileToolService:
    """Filesystem operations gated by the access policy and the file adapter."""

    def __init__(
        self,
        policy: AccessPolicy | None = None,
        adapter: FileAdapter | None = None,
        base_directory: str | Path | None = None,
    ) -> None:
        self.policy = policy or AccessPolicy(base_directory)
        self.adapter = adapter or FileAdapter()
        self.base_directory = base_directory

    def _canonicalize(self, path: str | Path) -> str:
        if not str(path).strip():
            raise PolicyViolationError("Path cannot be empty.")
        return self.policy.resolve(path)

    def read_file(self, path: str | Path, policy: WorkspacePolicy) -> str:
        full_path = self._canonicalize(path)
        _ensure_allowed(
            self.policy.can_read(full_path, policy),
            f"Read denied by policy for path: {full_path}",
        )
        return self.adapter.read(full_path)

    def search_files(
        self, root: str | Path, pattern: str, policy: WorkspacePolicy
    ) -> list[str]:
        full_root = self._canonicalize(root)
        _ensure_allowed(
            self.policy.can_read(full_root, policy),
            f"Search denied by policy for path: {full_root}",
        )
        if not os.path.isdir(full_root):
            raise NotADirectoryError(f"Search root is not a directory: {full_root}")

        name_pattern = (pattern or "").strip() or "*"
        matches: list[str] = []
        for directory, _dirnames, filenames in os.walk(full_root):
            for name in filenames:
                if not fnmatch.fnmatchcase(name.casefold(), name_pattern.casefold()):
                    continue
                candidate = self.policy.resolve(os.path.join(directory, name))
                # Each match is checked on its own; a symlink can leave the grant.
                if self.policy.can_read(candidate, policy):
                    matches.append(candidate)
        return sorted(matches, key=path_key)

    def write_file(self, path: str | Path, content: str, policy: WorkspacePolicy) -> None:
        full_path = self._canonicalize(path)
        _ensure_allowed(
            self.policy.can_write(full_path, policy),
            f"Write denied by policy for path: {full_path}",
        )
        _ensure_allowed(
            self.adapter.can_write(full_path),
            f"Write denied by adapter for path: {full_path}. "
            f"{self.adapter.describe_capability(full_path)}",
        )
        self.adapter.write(full_path, content)

    def create_file(self, path: str | Path, content: str, policy: WorkspacePolicy) -> None:
        full_path = self._canonicalize(path)
        _ensure_allowed(
            self.policy.can_create(full_path, policy),
            f"Create denied by policy for path: {full_path}",
        )
        _ensure_allowed(
            self.adapter.can_write(full_path),
            f"Create/write denied by adapter for path: {full_path}. "
            f"{self.adapter.describe_capability(full_path)}",
        )
        Path(full_path).parent.mkdir(parents=True, exist_ok=True)
        self.adapter.write(full_path, content)

    def create_folder(self, path: str | Path, policy: WorkspacePolicy) -> None:
        full_path = self._canonicalize(path)
        _ensure_allowed(
            self.policy.can_create(full_path, policy),
            f"Create folder denied by policy for path: {full_path}",
        )
        Path(full_path).mkdir(parents=True, exist_ok=True)

    def execute(self, command: ToolCommand, policy: WorkspacePolicy) -> str:
        """Run a parsed tool command and render its result as step output."""
        operation = command.operation
        if operation is ToolOperation.READ:
            return self.read_file(command.path, policy)
        if operation is ToolOperation.SEARCH:
            matches = self.search_files(command.path, command.pattern, policy)
            return "\n".join(matches) if matches else "No files matched."
        if operation is ToolOperation.WRITE:
            self.write_file(command.path, command.content, policy)
            return f"Wrote {len(command.content)} characters to {self._canonicalize(command.path)}"
        if operation is ToolOperation.CREATE_FILE:
            self.create_file(command.path, command.content, policy)
            return f"Created file {self._canonicalize(command.path)}"
        self.create_folder(command.path, policy)
        return f"Created folder {self._canonicalize(command.path)}"
