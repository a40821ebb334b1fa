from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from pathlib import Path

from openplane.models import NetworkAllowlist, PathGrant, WorkspacePolicy
from openplane.paths import canonical_path, is_within_scope

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_HOSTS = frozenset(
    {
        "github.com",
        "api.github.com",
        "copilot-proxy.githubusercontent.com",
        "models.inference.ai.azure.com",
        "api.openai.com",
        "api.anthropic.com",
    }
)


class PolicyViolationError(RuntimeError):
    """Raised when an operation falls outside the workspace's granted capabilities."""


class AccessPolicy:
    """Path checks against the grants of a workspace policy.

    Candidates and grant paths are canonicalised the same way, so a grant
    covers its own directory and everything below ``grant + separator``.
    """

    def __init__(self, base_directory: str | Path | None = None) -> None:
        self.base_directory = base_directory

    def resolve(self, path: str | Path) -> str:
        return canonical_path(path, self.base_directory)

    def can_read(self, path: str | Path, policy: WorkspacePolicy) -> bool:
        return self._is_allowed(path, policy, lambda grant: grant.allow_read)

    def can_write(self, path: str | Path, policy: WorkspacePolicy) -> bool:
        return self._is_allowed(path, policy, lambda grant: grant.allow_write)

    def can_create(self, path: str | Path, policy: WorkspacePolicy) -> bool:
        return self._is_allowed(path, policy, lambda grant: grant.allow_create)

    def _is_allowed(
        self,
        path: str | Path,
        policy: WorkspacePolicy,
        flag: Callable[[PathGrant], bool],
    ) -> bool:
        if not str(path).strip():
            return False
        candidate = self.resolve(path)
        for grant in policy.path_grants:
            if not flag(grant) or not grant.absolute_path.strip():
                continue
            if is_within_scope(candidate, canonical_path(grant.absolute_path)):
                return True
        return False


class NetworkPolicy:
    def is_allowed_host(self, host: str, policy: WorkspacePolicy) -> bool:
        return policy.network_allowlist.allows(host)

    def default_allowed_hosts(self) -> frozenset[str]:
        return DEFAULT_ALLOWED_HOSTS

    def with_default_allowlist(
        self, workspace_id: str, path_grants: Iterable[PathGrant]
    ) -> WorkspacePolicy:
        return WorkspacePolicy(
            workspace_id=workspace_id,
            path_grants=tuple(path_grants),
            network_allowlist=NetworkAllowlist.of(DEFAULT_ALLOWED_HOSTS),
        )

    def ensure_hosts_allowed(self, hosts: Iterable[str], policy: WorkspacePolicy) -> None:
        for host in hosts:
            if not self.is_allowed_host(host, policy):
                logger.warning(
                    "Blocked network access to %s for workspace %s", host, policy.workspace_id
                )
                raise PolicyViolationError(f"[NetworkDenied] Host not allowlisted: {host}")
