"""
The resolver module decides, for any logical path, which branch is authoritative.

The read-write branch always wins: if it holds a real entry, that entry is the logical entry, and a
read-only entry of the same name is only relevant when both are directories (their listings are
merged). Otherwise the read-only entry is used, unless a whiteout hides it or one of its ancestors.
"""

from __future__ import annotations

import contextlib
import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path

from stratum.common import NotADirectoryUnionError, NotFoundError, PermissionDeniedError
from stratum.config import Config, Origin
from stratum.locks import lock, path_lock_name
from stratum.overrides import Attributes, delete_override, overlay_attributes, read_override
from stratum.paths import ancestors, is_reserved_path, normalize, ro_path, rw_path, temporary_path
from stratum.privileges import apply_ownership
from stratum.whiteouts import is_masked

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResolvedLocation:
    path: str
    origin: Origin
    rw_path: Path
    ro_path: Path

    @property
    def concrete(self) -> Path:
        """The branch entry that backs the logical entry."""
        if self.origin == "NONE":
            raise NotFoundError("No such file or directory", self.path)
        return self.ro_path if self.origin == "RO" else self.rw_path

    @property
    def on_rw(self) -> bool:
        return self.origin in ("RW", "RW_AND_RO")


def _lstat(p: Path) -> os.stat_result | None:
    try:
        return os.lstat(p)
    except (FileNotFoundError, NotADirectoryError):
        return None
    except PermissionError as e:
        raise PermissionDeniedError(f"Cannot probe branch entry: {e.strerror}", str(p)) from e


def resolve(c: Config, path: str) -> ResolvedLocation:
    path = normalize(path)
    rw = rw_path(c, path)
    ro = ro_path(c, path)

    def _rv(origin: Origin) -> ResolvedLocation:
        logger.debug(f"LOGICAL: Resolved {path} to {origin}")
        return ResolvedLocation(path=path, origin=origin, rw_path=rw, ro_path=ro)

    if path == "/":
        return _rv("RW_AND_RO")
    if is_reserved_path(path):
        return _rv("NONE")

    rw_st = _lstat(rw)
    if rw_st is not None:
        if stat.S_ISDIR(rw_st.st_mode) and not is_masked(c, path):
            ro_st = _lstat(ro)
            if ro_st is not None and stat.S_ISDIR(ro_st.st_mode):
                return _rv("RW_AND_RO")
        return _rv("RW")

    if is_masked(c, path):
        return _rv("NONE")
    if _lstat(ro) is not None:
        return _rv("RO")
    return _rv("NONE")


def ro_attributes(c: Config, path: str, st: os.stat_result | None = None) -> Attributes:
    """Attributes of the read-only entry at `path` with its override record applied."""
    path = normalize(path)
    if st is None:
        st = os.lstat(ro_path(c, path))
    return overlay_attributes(Attributes.from_stat(st, "RO"), read_override(c, path))


def materialize_directory(c: Config, path: str, attrs: Attributes) -> Path:
    """
    Create the read-write directory for `path` mirroring `attrs`. The directory is prepared under a
    temporary name and renamed into place, so it never appears with half-applied attributes. The
    caller holds the path lock.
    """
    rw = rw_path(c, path)
    tmp = temporary_path(rw.parent)
    os.mkdir(tmp, 0o700)
    try:
        apply_ownership(tmp, attrs.st_uid, attrs.st_gid)
        os.chmod(tmp, stat.S_IMODE(attrs.st_mode))
        os.utime(tmp, ns=(attrs.st_atime_ns, attrs.st_mtime_ns))
        os.rename(tmp, rw)
    except BaseException:
        with contextlib.suppress(OSError):
            os.rmdir(tmp)
        raise
    # The new directory now carries the overridden attributes itself.
    delete_override(c, path)
    return rw


def find_path(c: Config, path: str) -> Path:
    """
    Make sure every ancestor directory of `path` exists on the read-write branch, creating the missing
    ones as copies of the read-only directories they mirror. Returns the read-write parent directory
    of `path`.
    """
    path = normalize(path)
    for ancestor in ancestors(path):
        rw = rw_path(c, ancestor)
        st = _lstat(rw)
        if st is not None:
            if not stat.S_ISDIR(st.st_mode):
                raise NotADirectoryUnionError("Ancestor is not a directory", ancestor)
            continue
        with lock(c, path_lock_name(ancestor)):
            loc = resolve(c, ancestor)
            if loc.on_rw:
                # Somebody beat us to it.
                if not rw.is_dir():
                    raise NotADirectoryUnionError("Ancestor is not a directory", ancestor)
                continue
            if loc.origin == "NONE":
                raise NotFoundError("Ancestor does not exist", ancestor)
            ro_st = os.lstat(loc.ro_path)
            if not stat.S_ISDIR(ro_st.st_mode):
                raise NotADirectoryUnionError("Ancestor is not a directory", ancestor)
            materialize_directory(c, ancestor, ro_attributes(c, ancestor, ro_st))
            logger.debug(f"LOGICAL: Created read-write ancestor {ancestor} for {path}")
    return rw_path(c, path).parent if path != "/" else c.rw_branch
