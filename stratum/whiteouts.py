"""
The whiteouts module implements deletion of read-only content without mutating the read-only
branch. A whiteout is a zero-length, root-owned, mode 0400 file named `.wh.<name>` placed in the
read-write parent directory of the entry it hides. Its existence means "this logical name does not
exist". A whiteout of a directory is also opaque: everything beneath the hidden read-only directory
is hidden along with it.

Creating any entry at a logical path removes the whiteout at that path (revival).

Removal of a read-write entry that shadows read-only content is a two step sequence: hide the
read-only entry, then remove the read-write one. We create the whiteout FIRST and roll it back if the
removal fails. If we crash between the two steps, we are left with a whiteout next to a real entry.
The real entry wins resolution, so the deletion simply did not happen; `stratum check` cleans up the
redundant marker.
"""

import contextlib
import logging
import os
import shutil
import stat
from pathlib import Path

from stratum.common import InconsistentError, NotEmptyError
from stratum.config import Config
from stratum.locks import lock, path_lock_name
from stratum.paths import (
    WHITEOUT_PREFIX,
    ancestors,
    is_reserved_name,
    join,
    normalize,
    ro_path,
    rw_path,
    temporary_path,
    whiteout_path,
)
from stratum.privileges import elevated

logger = logging.getLogger(__name__)


def _lexists(path: Path) -> bool:
    try:
        os.lstat(path)
    except (FileNotFoundError, NotADirectoryError):
        return False
    return True


def find_whiteout(c: Config, path: str) -> bool:
    path = normalize(path)
    if path == "/":
        return False
    return _lexists(whiteout_path(c, path))


def is_masked(c: Config, path: str) -> bool:
    """
    Whether read-only content at `path` is hidden: by a whiteout on the path itself, by a whiteout of
    any ancestor, or by a read-write ancestor that is not a directory (the read-write branch is
    authoritative for that name, so nothing can exist beneath it).
    """
    path = normalize(path)
    if path == "/":
        return False
    for ancestor in ancestors(path):
        if find_whiteout(c, ancestor):
            return True
        try:
            st = os.lstat(rw_path(c, ancestor))
        except (FileNotFoundError, NotADirectoryError):
            continue
        if not stat.S_ISDIR(st.st_mode):
            return True
    return find_whiteout(c, path)


def ro_visible(c: Config, path: str) -> bool:
    """Whether the read-only branch holds an entry at `path` that is not hidden."""
    return _lexists(ro_path(c, path)) and not is_masked(c, path)


def create_whiteout(c: Config, path: str) -> bool:
    """
    Create the whiteout for `path`. The read-write parent directory must already exist; callers
    run `find_path` beforehand. Returns False if the whiteout already existed.
    """
    path = normalize(path)
    wh = whiteout_path(c, path)
    logger.debug(f"LOGICAL: Creating whiteout {wh} for {path}")
    with elevated() as privileged:
        try:
            fd = os.open(wh, os.O_WRONLY | os.O_CREAT | os.O_EXCL, stat.S_IRUSR)
        except FileExistsError:
            st = os.lstat(wh)
            if not stat.S_ISREG(st.st_mode):
                raise InconsistentError("Whiteout name is occupied by a non-file", str(wh)) from None
            logger.debug(f"LOGICAL: Whiteout {wh} already exists")
            return False
        try:
            if privileged:
                os.fchown(fd, 0, 0)
        except OSError:
            os.close(fd)
            os.unlink(wh)
            raise
        os.close(fd)
    return True


def unlink_whiteout(c: Config, path: str) -> bool:
    """Remove the whiteout for `path` if there is one. Returns whether one was removed."""
    path = normalize(path)
    wh = whiteout_path(c, path)
    try:
        os.unlink(wh)
    except (FileNotFoundError, NotADirectoryError):
        return False
    logger.debug(f"LOGICAL: Removed whiteout {wh} for {path}")
    return True


def unlink_rw_file(c: Config, path: str, concrete: Path, has_ro: bool | None = None) -> None:
    """
    Remove the read-write entry `concrete` backing `path`. If a visible read-only entry of the same
    name exists, it is whited out so that it does not reappear. Pass `has_ro` if the caller already
    knows whether there is a read-only counterpart.
    """
    path = normalize(path)
    with lock(c, path_lock_name(path)):
        if has_ro is None:
            has_ro = ro_visible(c, path)
        created = create_whiteout(c, path) if has_ro else False
        try:
            os.unlink(concrete)
        except OSError:
            if created:
                logger.debug(f"LOGICAL: Rolling back whiteout for {path} after failed unlink")
                unlink_whiteout(c, path)
            raise
        logger.debug(f"LOGICAL: Unlinked {concrete} for {path} ({has_ro=})")


def remove_rw_directory(c: Config, path: str, concrete: Path, has_ro: bool | None = None) -> None:
    """
    Remove the read-write directory `concrete` backing `path`, whiting out a visible read-only
    directory of the same name. The directory may only contain reserved markers; callers check
    emptiness of the merged view first. The directory is renamed aside atomically and then deleted,
    so its markers never disappear while the directory is still visible.
    """
    path = normalize(path)
    with lock(c, path_lock_name(path)):
        if has_ro is None:
            has_ro = ro_visible(c, path)
        created = create_whiteout(c, path) if has_ro else False
        try:
            for entry in os.scandir(concrete):
                if not is_reserved_name(entry.name):
                    raise NotEmptyError("Directory holds real entries", str(concrete))
            aside = temporary_path(concrete.parent)
            os.rename(concrete, aside)
        except OSError:
            if created:
                logger.debug(f"LOGICAL: Rolling back whiteout for {path} after failed rmdir")
                unlink_whiteout(c, path)
            raise
        shutil.rmtree(aside)
        logger.debug(f"LOGICAL: Removed directory {concrete} for {path} ({has_ro=})")


def hide_directory_contents(c: Config, path: str) -> int:
    """
    Populate the freshly created read-write directory at `path` with a whiteout for every child of
    the same-named read-only directory, so that the new directory starts out logically empty. Names
    that the read-write directory already holds shadow their read-only counterpart and are skipped.
    Returns the number of whiteouts created.
    """
    path = normalize(path)
    ro = ro_path(c, path)
    rw = rw_path(c, path)
    try:
        entries = list(os.scandir(ro))
    except (FileNotFoundError, NotADirectoryError):
        return 0
    created = 0
    for entry in entries:
        if is_reserved_name(entry.name) or _lexists(rw / entry.name):
            continue
        if create_whiteout(c, join(path, entry.name)):
            created += 1
    logger.debug(f"LOGICAL: Hid {created} read-only entries beneath {path}")
    return created


def whiteouts_in(c: Config, path: str) -> set[str]:
    """Names hidden by whiteouts in the read-write directory at `path`."""
    rv: set[str] = set()
    with contextlib.suppress(FileNotFoundError, NotADirectoryError):
        for entry in os.scandir(rw_path(c, path)):
            if entry.name.startswith(WHITEOUT_PREFIX):
                rv.add(entry.name[len(WHITEOUT_PREFIX) :])
    return rv
