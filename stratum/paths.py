"""
The paths module translates logical union paths into concrete branch paths, and owns the reserved
on-disk namespace. The reserved names are stable across restarts and must never collide with user
data:

- `.wh.<name>`: whiteout marker, hides the read-only entry `<name>`.
- `.me.<name>`: metadata override record for the read-only entry `<name>`.
- `.cu.<random>`: in-flight temporary of a copy-up, record rewrite, or directory removal.
"""

import posixpath
from pathlib import Path

import uuid6

from stratum.common import InvalidArgumentError, NameTooLongError
from stratum.config import BranchRole, Config

WHITEOUT_PREFIX = ".wh."
OVERRIDE_PREFIX = ".me."
TEMPORARY_PREFIX = ".cu."
RESERVED_PREFIXES = (WHITEOUT_PREFIX, OVERRIDE_PREFIX, TEMPORARY_PREFIX)

# Linux limits. Checked against the composed branch path, so that we report ENAMETOOLONG ourselves
# instead of failing halfway through a multi-step operation.
NAME_MAX = 255
PATH_MAX = 4096


def normalize(path: str) -> str:
    """
    Normalize a logical path: it must be absolute, and comes out without a trailing slash or any
    `.`/`..` segments. `..` cannot climb above the union root.
    """
    if not path.startswith("/"):
        raise InvalidArgumentError(f"Logical paths must be absolute: got {path!r}", path)
    normalized = posixpath.normpath(path)
    # POSIX allows exactly two leading slashes to mean something implementation-defined. We don't.
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    return normalized


def split(path: str) -> tuple[str, str]:
    """Split a normalized logical path into its parent and its final segment."""
    if path == "/":
        raise InvalidArgumentError("The union root has no parent", path)
    parent, name = posixpath.split(path)
    return parent, name


def join(parent: str, name: str) -> str:
    return posixpath.join(parent, name)


def ancestors(path: str) -> list[str]:
    """All proper ancestors of a path, excluding the root, from the top down."""
    rv: list[str] = []
    cur = "/"
    for part in path.strip("/").split("/")[:-1]:
        if not part:
            continue
        cur = posixpath.join(cur, part)
        rv.append(cur)
    return rv


def is_reserved_name(name: str) -> bool:
    return name.startswith(RESERVED_PREFIXES)


def is_reserved_path(path: str) -> bool:
    return any(is_reserved_name(part) for part in path.split("/") if part)


def branch_path(c: Config, role: BranchRole, path: str) -> Path:
    root = c.branch(role).root
    concrete = root / path.lstrip("/") if path != "/" else root
    check_length(concrete)
    return concrete


def rw_path(c: Config, path: str) -> Path:
    return branch_path(c, "RW", path)


def ro_path(c: Config, path: str) -> Path:
    return branch_path(c, "RO", path)


def marker_path(c: Config, prefix: str, path: str) -> Path:
    """Compose `<rw-root>/<dir>/<prefix><name>` for the logical path `<dir>/<name>`."""
    parent, name = split(path)
    concrete = rw_path(c, parent) / f"{prefix}{name}"
    check_length(concrete)
    return concrete


def whiteout_path(c: Config, path: str) -> Path:
    return marker_path(c, WHITEOUT_PREFIX, path)


def override_path(c: Config, path: str) -> Path:
    return marker_path(c, OVERRIDE_PREFIX, path)


def temporary_path(directory: Path) -> Path:
    """A fresh `.cu.` name in a read-write directory. Creation must still use an exclusive flag."""
    return directory / f"{TEMPORARY_PREFIX}{uuid6.uuid7().hex}"


def check_length(concrete: Path) -> None:
    spath = str(concrete)
    if len(spath.encode()) > PATH_MAX:
        raise NameTooLongError(f"Composed path exceeds {PATH_MAX} bytes", spath)
    if len(concrete.name.encode()) > NAME_MAX:
        raise NameTooLongError(f"Path component exceeds {NAME_MAX} bytes", spath)
