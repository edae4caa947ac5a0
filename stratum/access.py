"""
The access module is the permission gate in front of every mutation. Checks are evaluated against
the override-aware attribute view, so a chmod recorded in an override record is enforced exactly like
a chmod on a read-write entry. A check either returns or raises `PermissionDeniedError`; it never has
side effects.

The daemon itself usually runs as root, so we cannot lean on the host kernel to enforce permissions
on the branches. We enforce them ourselves with the classic owner/group/other rules.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass

from stratum.attributes import get_attributes
from stratum.common import NotADirectoryUnionError, PermissionDeniedError
from stratum.config import Config
from stratum.overrides import AttributeChanges, Attributes
from stratum.paths import ancestors, is_reserved_name, normalize, split

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Caller:
    uid: int
    gid: int
    groups: tuple[int, ...] = ()

    @classmethod
    def current(cls) -> Caller:
        return Caller(uid=os.geteuid(), gid=os.getegid(), groups=tuple(os.getgroups()))

    @property
    def is_root(self) -> bool:
        return self.uid == 0

    def in_group(self, gid: int) -> bool:
        return gid == self.gid or gid in self.groups


def has_permission(attrs: Attributes, caller: Caller, want: int) -> bool:
    """
    Whether `caller` holds every permission in `want`, a mask of `os.R_OK`, `os.W_OK` and `os.X_OK`.
    Root holds all of them, except that it may only execute files with at least one execute bit.
    """
    if caller.is_root:
        if want & os.X_OK and not attrs.is_dir:
            return bool(attrs.st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))
        return True
    if caller.uid == attrs.st_uid:
        bits = (attrs.st_mode >> 6) & 0o7
    elif caller.in_group(attrs.st_gid):
        bits = (attrs.st_mode >> 3) & 0o7
    else:
        bits = attrs.st_mode & 0o7
    return bits & want == want


def _deny(caller: Caller, path: str, what: str) -> PermissionDeniedError:
    logger.debug(f"LOGICAL: Denied {what} on {path} to uid={caller.uid}")
    return PermissionDeniedError(f"Permission denied: {what}", path)


def can_traverse(c: Config, caller: Caller, path: str) -> None:
    """Search permission on every directory leading up to `path`."""
    path = normalize(path)
    if path == "/":
        return
    for d in ["/", *ancestors(path)]:
        attrs = get_attributes(c, d)
        if not attrs.is_dir:
            raise NotADirectoryUnionError("Not a directory", d)
        if not has_permission(attrs, caller, os.X_OK):
            raise _deny(caller, d, "search")


def can_access(c: Config, caller: Caller, path: str, mode: int = os.F_OK) -> Attributes:
    """Check `access(2)` style permission. Returns the entry's attributes for convenience."""
    path = normalize(path)
    can_traverse(c, caller, path)
    attrs = get_attributes(c, path)
    want = mode & (os.R_OK | os.W_OK | os.X_OK)
    if want and not has_permission(attrs, caller, want):
        raise _deny(caller, path, f"access mode {mode:o}")
    return attrs


def _writable_parent(c: Config, caller: Caller, path: str) -> Attributes:
    parent, _ = split(path)
    can_traverse(c, caller, path)
    attrs = get_attributes(c, parent)
    if not attrs.is_dir:
        raise NotADirectoryUnionError("Not a directory", parent)
    if not has_permission(attrs, caller, os.W_OK | os.X_OK):
        raise _deny(caller, parent, "write")
    return attrs


def can_create(c: Config, caller: Caller, path: str) -> None:
    path = normalize(path)
    _, name = split(path)
    if is_reserved_name(name):
        raise _deny(caller, path, "create reserved name")
    _writable_parent(c, caller, path)


def can_remove(c: Config, caller: Caller, path: str) -> Attributes:
    """Check that `caller` may unlink, rmdir or rename away `path`. Returns the entry's attributes."""
    path = normalize(path)
    if path == "/":
        raise _deny(caller, path, "remove the root")
    parent = _writable_parent(c, caller, path)
    attrs = get_attributes(c, path)
    if parent.st_mode & stat.S_ISVTX and not caller.is_root:
        if caller.uid not in (attrs.st_uid, parent.st_uid):
            raise _deny(caller, path, "remove from sticky directory")
    return attrs


def can_change_attributes(c: Config, caller: Caller, path: str, changes: AttributeChanges) -> None:
    path = normalize(path)
    can_traverse(c, caller, path)
    attrs = get_attributes(c, path)
    owner = caller.is_root or caller.uid == attrs.st_uid

    if changes.mode is not None and not owner:
        raise _deny(caller, path, "chmod")
    if changes.uid is not None and changes.uid != attrs.st_uid and not caller.is_root:
        raise _deny(caller, path, "chown")
    if changes.gid is not None and changes.gid != attrs.st_gid and not caller.is_root:
        if not owner or not caller.in_group(changes.gid):
            raise _deny(caller, path, "chgrp")
    if changes.atime_ns is not None or changes.mtime_ns is not None:
        if not owner and not has_permission(attrs, caller, os.W_OK):
            raise _deny(caller, path, "utime")
    if changes.size is not None and not has_permission(attrs, caller, os.W_OK):
        raise _deny(caller, path, "truncate")
