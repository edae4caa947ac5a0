"""
The copyup module lazily duplicates read-only entries into the read-write branch. It runs when a
read-only entry is about to be mutated in a way that an override record cannot express: content
writes, truncation, renames, and link changes.

A copy-up is prepared under a temporary `.cu.` name in the read-write parent directory and renamed
into place in one step, so a concurrent reader sees either the read-only original or the complete
copy. Nothing is ever written to the read-only branch. Concurrent copy-ups of the same path are
serialized by the path lock; the loser re-resolves and returns the winner's copy.
"""

import contextlib
import errno
import logging
import os
import shutil
import stat
from pathlib import Path

from stratum.common import InvalidArgumentError, NotFoundError, ResourceExhaustedError
from stratum.config import Config
from stratum.locks import lock, path_lock_name
from stratum.overrides import Attributes, delete_override
from stratum.paths import normalize, temporary_path
from stratum.privileges import apply_ownership
from stratum.resolver import find_path, materialize_directory, resolve, ro_attributes
from stratum.whiteouts import unlink_whiteout

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024


def copy_up(c: Config, path: str) -> Path:
    """
    Make sure `path` is backed by the read-write branch and return the read-write entry. Entries
    already on the read-write branch are returned as they are.
    """
    path = normalize(path)
    with lock(c, path_lock_name(path)):
        loc = resolve(c, path)
        if loc.on_rw:
            return loc.rw_path
        if loc.origin == "NONE":
            raise NotFoundError("No such file or directory", path)

        find_path(c, path)
        ro_st = os.lstat(loc.ro_path)
        attrs = ro_attributes(c, path, ro_st)
        logger.debug(f"LOGICAL: Copying up {loc.ro_path} to {loc.rw_path}")
        if stat.S_ISDIR(ro_st.st_mode):
            materialize_directory(c, path, attrs)
        else:
            _copy_entry(loc.ro_path, loc.rw_path, attrs)
            delete_override(c, path)
        # A crash could have left a whiteout next to the read-only entry's old copy. The new copy is
        # the logical entry now, so the marker has no business staying around.
        unlink_whiteout(c, path)
        logger.info(f"Copied up {path} to the read-write branch")
        return loc.rw_path


def _copy_entry(src: Path, dst: Path, attrs: Attributes) -> None:
    tmp = temporary_path(dst.parent)
    mode = attrs.st_mode
    try:
        if stat.S_ISREG(mode):
            with src.open("rb") as fsrc:
                fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
                with os.fdopen(fd, "wb") as fdst:
                    shutil.copyfileobj(fsrc, fdst, COPY_BUFFER_SIZE)
                    fdst.flush()
                    os.fsync(fdst.fileno())
        elif stat.S_ISLNK(mode):
            os.symlink(os.readlink(src), tmp)
        elif stat.S_ISFIFO(mode):
            os.mkfifo(tmp, 0o600)
        elif stat.S_ISCHR(mode) or stat.S_ISBLK(mode):
            os.mknod(tmp, stat.S_IFMT(mode) | 0o600, attrs.st_rdev)
        else:
            raise InvalidArgumentError("Cannot copy up this file type", str(src))

        apply_ownership(tmp, attrs.st_uid, attrs.st_gid)
        if not stat.S_ISLNK(mode):
            # chmod after chown: chown clears the setuid and setgid bits.
            os.chmod(tmp, stat.S_IMODE(mode))
        os.utime(tmp, ns=(attrs.st_atime_ns, attrs.st_mtime_ns), follow_symlinks=False)
        os.rename(tmp, dst)
    except BaseException as e:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        if isinstance(e, OSError) and e.errno in (errno.ENOSPC, errno.EDQUOT):
            raise ResourceExhaustedError(f"No space left to copy up: {e.strerror}", str(src)) from e
        raise
