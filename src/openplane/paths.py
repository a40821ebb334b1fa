from __future__ import annotations

import os
from pathlib import Path


def canonical_path(path: str | Path, base_directory: str | Path | None = None) -> str:
    """Absolute, symlink-resolved form of ``path`` without a trailing separator."""
    raw = os.path.expanduser(str(path))
    if base_directory is not None and not os.path.isabs(raw):
        raw = os.path.join(os.path.expanduser(str(base_directory)), raw)
    resolved = os.path.realpath(os.path.abspath(raw))
    stripped = resolved.rstrip(os.sep)
    if os.altsep:
        stripped = stripped.rstrip(os.altsep)
    # Filesystem roots ("/" or "C:\") keep their separator.
    if not stripped or stripped.endswith(":"):
        return resolved
    return stripped


def path_key(path: str) -> str:
    return path.casefold()


def is_within_scope(candidate: str, scope: str) -> bool:
    """True when ``candidate`` equals ``scope`` or lies beneath it.

    Both arguments must already be canonical.
    """
    candidate_key = path_key(candidate)
    scope_key = path_key(scope)
    if candidate_key == scope_key:
        return True
    prefix = scope_key if scope_key.endswith(os.sep) else scope_key + os.sep
    return candidate_key.startswith(prefix)
