"""
The attributes module reads and changes the attributes of logical entries. Read-write entries are
changed in place. Read-only entries are never copied up for an attribute change: the change is
recorded in a metadata override record instead (see the overrides module).
"""

import logging
import os
import stat

from stratum.common import InvalidArgumentError, IsADirectoryUnionError, NotFoundError
from stratum.config import Config
from stratum.locks import lock, path_lock_name
from stratum.overrides import (
    AttributeChanges,
    Attributes,
    OverrideRecord,
    delete_override,
    prune_record,
    read_override,
    write_override,
)
from stratum.resolver import ResolvedLocation, find_path, resolve, ro_attributes

logger = logging.getLogger(__name__)


def get_attributes(c: Config, path: str, loc: ResolvedLocation | None = None) -> Attributes:
    loc = loc or resolve(c, path)
    if loc.origin == "NONE":
        raise NotFoundError("No such file or directory", loc.path)
    if loc.origin == "RO":
        return ro_attributes(c, loc.path)
    return Attributes.from_stat(os.lstat(loc.rw_path), loc.origin)


def set_attributes(c: Config, path: str, changes: AttributeChanges) -> Attributes:
    loc = resolve(c, path)
    if loc.origin == "NONE":
        raise NotFoundError("No such file or directory", loc.path)
    if loc.on_rw:
        _apply_rw(loc, changes)
        return get_attributes(c, loc.path)

    if changes.size is not None:
        raise InvalidArgumentError("Read-only entries must be copied up before truncation", loc.path)
    with lock(c, path_lock_name(loc.path)):
        loc = resolve(c, loc.path)
        if loc.origin == "NONE":
            raise NotFoundError("No such file or directory", loc.path)
        if loc.on_rw:
            # Copied up while we waited for the lock.
            _apply_rw(loc, changes)
            return get_attributes(c, loc.path)
        original = os.lstat(loc.ro_path)
        record = read_override(c, loc.path) or OverrideRecord()
        if changes.mode is not None:
            record.mode = stat.S_IMODE(changes.mode)
        if changes.uid is not None:
            record.uid = changes.uid
        if changes.gid is not None:
            record.gid = changes.gid
        if changes.atime_ns is not None:
            record.atime_ns = changes.atime_ns
        if changes.mtime_ns is not None:
            record.mtime_ns = changes.mtime_ns
        prune_record(record, original)
        if record.empty() and not record.extra:
            delete_override(c, loc.path)
        else:
            find_path(c, loc.path)
            write_override(c, loc.path, record)
        logger.debug(f"LOGICAL: Recorded attribute changes {changes} for read-only {loc.path}")
    return get_attributes(c, loc.path)


def _apply_rw(loc: ResolvedLocation, changes: AttributeChanges) -> None:
    p = loc.rw_path
    st = os.lstat(p)
    is_link = stat.S_ISLNK(st.st_mode)
    if changes.size is not None:
        if stat.S_ISDIR(st.st_mode):
            raise IsADirectoryUnionError("Cannot truncate a directory", loc.path)
        os.truncate(p, changes.size)
    # Linux cannot change the mode of a symlink; the mode of a symlink is meaningless anyways.
    if changes.mode is not None and not is_link:
        os.chmod(p, stat.S_IMODE(changes.mode))
    if changes.uid is not None or changes.gid is not None:
        uid = changes.uid if changes.uid is not None else -1
        gid = changes.gid if changes.gid is not None else -1
        os.chown(p, uid, gid, follow_symlinks=False)
    if changes.atime_ns is not None or changes.mtime_ns is not None:
        atime = changes.atime_ns if changes.atime_ns is not None else st.st_atime_ns
        mtime = changes.mtime_ns if changes.mtime_ns is not None else st.st_mtime_ns
        os.utime(p, ns=(atime, mtime), follow_symlinks=False)
    logger.debug(f"LOGICAL: Applied attribute changes {changes} to {p}")
