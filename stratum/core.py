"""
The core module implements the union filesystem operations on logical paths. Every operation follows
the same shape:

1. Check permissions with the access gate. Denials have no side effects.
2. Resolve the path to find the authoritative branch.
3. Read-write entries are operated on directly. Read-only entries are routed to the override
   records (attribute-only changes), the copy-up engine (content and structural changes), or the
   whiteouts (deletions).

Multi-step sequences run under the path lock of every logical path they touch. The core does not
perform byte I/O: `open` and `create` return the concrete path to do I/O against, which the caller
(the FUSE adapter) opens itself.
"""

import logging
import os
import shutil
import stat
from collections.abc import Callable
from pathlib import Path

from stratum.access import (
    Caller,
    can_access,
    can_change_attributes,
    can_create,
    can_remove,
    can_traverse,
)
from stratum.attributes import get_attributes, set_attributes
from stratum.common import (
    AlreadyExistsError,
    CrossBranchError,
    InvalidArgumentError,
    IsADirectoryUnionError,
    NotADirectoryUnionError,
    NotEmptyError,
    NotFoundError,
    PermissionDeniedError,
)
from stratum.config import Config
from stratum.copyup import copy_up
from stratum.listing import is_empty_dir, read_directory
from stratum.locks import lock, lock_many, path_lock_name
from stratum.overrides import AttributeChanges, Attributes, delete_override
from stratum.paths import ancestors, normalize
from stratum.privileges import apply_ownership
from stratum.resolver import find_path, resolve
from stratum.whiteouts import (
    create_whiteout,
    hide_directory_contents,
    remove_rw_directory,
    ro_visible,
    unlink_rw_file,
    unlink_whiteout,
)

logger = logging.getLogger(__name__)


def open_wants(flags: int) -> int:
    """Translate `open(2)` flags into the `access(2)` mask they require."""
    accmode = flags & os.O_ACCMODE
    want = 0
    if accmode in (os.O_RDONLY, os.O_RDWR):
        want |= os.R_OK
    if accmode in (os.O_WRONLY, os.O_RDWR) or flags & os.O_TRUNC:
        want |= os.W_OK
    return want


class UnionCore:
    def __init__(self, config: Config):
        self.config = config

    # === Reads ===

    def getattr(self, path: str, caller: Caller) -> Attributes:
        can_traverse(self.config, caller, path)
        return get_attributes(self.config, path)

    def access(self, path: str, caller: Caller, mode: int) -> None:
        logger.debug(f"LOGICAL: Received access for {path=} {mode=}")
        can_access(self.config, caller, path, mode)

    def readdir(self, path: str, caller: Caller) -> list[tuple[str, Attributes]]:
        logger.debug(f"LOGICAL: Received readdir for {path=}")
        attrs = can_access(self.config, caller, path, os.R_OK)
        if not attrs.is_dir:
            raise NotADirectoryUnionError("Not a directory", path)
        return list(read_directory(self.config, path))

    def readlink(self, path: str, caller: Caller) -> str:
        can_traverse(self.config, caller, path)
        loc = resolve(self.config, path)
        attrs = get_attributes(self.config, path, loc)
        if not stat.S_ISLNK(attrs.st_mode):
            raise InvalidArgumentError("Not a symbolic link", loc.path)
        return os.readlink(loc.concrete)

    def open(self, path: str, caller: Caller, flags: int) -> Path:
        """
        Check permissions for opening `path` with `flags` and return the concrete path to open. Write
        intent copies read-only entries up first, so the returned path is always safe to write to
        when writing was requested.
        """
        logger.debug(f"LOGICAL: Received open for {path=} {flags=}")
        want = open_wants(flags)
        attrs = can_access(self.config, caller, path, want)
        if attrs.is_dir and want & os.W_OK:
            raise IsADirectoryUnionError("Cannot open a directory for writing", path)
        if want & os.W_OK:
            return copy_up(self.config, path)
        return resolve(self.config, path).concrete

    def statfs(self) -> os.statvfs_result:
        return os.statvfs(self.config.rw_branch)

    # === Creation ===

    def _create(self, path: str, caller: Caller, make: Callable[[Path], None], own: bool = True) -> Attributes:
        """
        The shared protocol of every operation that creates a name: make the entry on the read-write
        branch, hand it to the caller, and only then revive the name by removing its whiteout. If we
        crash before the revival, the new entry is already authoritative.

        Pass `own=False` when `make` takes care of ownership itself. A hard link shares its inode with
        the source, so handing it to the caller would change the owner of the source.
        """
        c = self.config
        path = normalize(path)
        can_create(c, caller, path)
        with lock(c, path_lock_name(path)):
            loc = resolve(c, path)
            if loc.origin != "NONE":
                raise AlreadyExistsError("File exists", path)
            find_path(c, path)
            make(loc.rw_path)
            if own:
                try:
                    apply_ownership(loc.rw_path, caller.uid, caller.gid)
                except OSError:
                    _remove_entry(loc.rw_path)
                    raise
            unlink_whiteout(c, path)
            # Records of a deleted read-only entry must not apply to its replacement.
            delete_override(c, path)
        logger.debug(f"LOGICAL: Created {path} at {loc.rw_path}")
        return get_attributes(c, path)

    def create(self, path: str, caller: Caller, mode: int) -> tuple[Path, Attributes]:
        """Create an empty regular file. Returns the concrete path to open and its attributes."""
        logger.debug(f"LOGICAL: Received create for {path=} {mode=:o}")

        def make(p: Path) -> None:
            fd = os.open(p, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            os.close(fd)
            os.chmod(p, stat.S_IMODE(mode))

        attrs = self._create(path, caller, make)
        return resolve(self.config, path).rw_path, attrs

    def mknod(self, path: str, caller: Caller, mode: int, rdev: int = 0) -> Attributes:
        logger.debug(f"LOGICAL: Received mknod for {path=} {mode=:o} {rdev=}")
        if stat.S_ISDIR(mode):
            raise InvalidArgumentError("Use mkdir to create directories", path)

        def make(p: Path) -> None:
            if stat.S_ISREG(mode):
                os.close(os.open(p, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600))
            elif stat.S_ISFIFO(mode):
                os.mkfifo(p, 0o600)
            else:
                os.mknod(p, stat.S_IFMT(mode) | 0o600, rdev)
            os.chmod(p, stat.S_IMODE(mode))

        return self._create(path, caller, make)

    def mkdir(self, path: str, caller: Caller, mode: int) -> Attributes:
        logger.debug(f"LOGICAL: Received mkdir for {path=} {mode=:o}")
        c = self.config
        path = normalize(path)

        def make(p: Path) -> None:
            os.mkdir(p, 0o700)
            try:
                # A read-only directory of this name is currently whited out. Once the whiteout is
                # gone the two directories merge, so hide the old contents in the new directory.
                hide_directory_contents(c, path)
                os.chmod(p, stat.S_IMODE(mode))
            except OSError:
                shutil.rmtree(p)
                raise

        return self._create(path, caller, make)

    def symlink(self, path: str, caller: Caller, target: str) -> Attributes:
        logger.debug(f"LOGICAL: Received symlink for {path=} {target=}")
        return self._create(path, caller, lambda p: os.symlink(target, p))

    def link(self, src: str, dst: str, caller: Caller) -> Attributes:
        """
        Hard link `src` to `dst`. The read-only branch cannot be linked into, so linking a read-only
        entry creates a symbolic link to the read-only entry instead.
        """
        logger.debug(f"LOGICAL: Received link for {src=} {dst=}")
        c = self.config
        can_access(c, caller, src)
        loc = resolve(c, src)
        if get_attributes(c, src, loc).is_dir:
            raise PermissionDeniedError("Cannot hard link a directory", loc.path)

        def make(p: Path) -> None:
            cur = resolve(c, src)
            if cur.on_rw:
                # The new name keeps the owner of the inode it shares.
                os.link(cur.rw_path, p, follow_symlinks=False)
            elif cur.origin == "RO":
                os.symlink(cur.ro_path, p)
                try:
                    apply_ownership(p, caller.uid, caller.gid)
                except OSError:
                    p.unlink()
                    raise
            else:
                raise NotFoundError("No such file or directory", cur.path)

        return self._create(dst, caller, make, own=False)

    # === Deletion ===

    def unlink(self, path: str, caller: Caller) -> None:
        logger.debug(f"LOGICAL: Received unlink for {path=}")
        c = self.config
        path = normalize(path)
        if can_remove(c, caller, path).is_dir:
            raise IsADirectoryUnionError("Is a directory", path)
        with lock(c, path_lock_name(path)):
            loc = resolve(c, path)
            if loc.origin == "NONE":
                raise NotFoundError("No such file or directory", path)
            if loc.on_rw:
                unlink_rw_file(c, path, loc.rw_path)
            else:
                find_path(c, path)
                create_whiteout(c, path)
            delete_override(c, path)
        logger.info(f"Unlinked {path} ({loc.origin})")

    def rmdir(self, path: str, caller: Caller) -> None:
        logger.debug(f"LOGICAL: Received rmdir for {path=}")
        c = self.config
        path = normalize(path)
        if not can_remove(c, caller, path).is_dir:
            raise NotADirectoryUnionError("Not a directory", path)
        with lock(c, path_lock_name(path)):
            loc = resolve(c, path)
            if loc.origin == "NONE":
                raise NotFoundError("No such file or directory", path)
            if not is_empty_dir(c, path):
                raise NotEmptyError("Directory not empty", path)
            if loc.on_rw:
                remove_rw_directory(c, path, loc.rw_path)
            else:
                find_path(c, path)
                create_whiteout(c, path)
            delete_override(c, path)
        logger.info(f"Removed directory {path} ({loc.origin})")

    # === Modification ===

    def rename(self, old: str, new: str, caller: Caller) -> None:
        logger.debug(f"LOGICAL: Received rename for {old=} {new=}")
        c = self.config
        old = normalize(old)
        new = normalize(new)
        if old == new:
            return
        if new.startswith(old + "/"):
            raise InvalidArgumentError("Cannot move a directory into itself", new)
        if old.startswith(new + "/"):
            # The destination is a directory that holds the source, so it cannot be replaced.
            raise NotEmptyError("Directory not empty", new)

        src_attrs = can_remove(c, caller, old)
        if resolve(c, new).origin == "NONE":
            can_create(c, caller, new)
        else:
            can_remove(c, caller, new)

        # Copying up the source and creating the destination's parents lock the ancestors of both
        # paths. Take all of them now, in lock order, rather than one by one while holding the pair.
        names = [path_lock_name(p) for p in {old, new, *ancestors(old), *ancestors(new)}]
        with lock_many(c, names):
            src = resolve(c, old)
            dst = resolve(c, new)
            if src.origin == "NONE":
                raise NotFoundError("No such file or directory", old)
            dst_attrs = get_attributes(c, new, dst) if dst.origin != "NONE" else None

            if src_attrs.is_dir:
                # Moving read-only content would mean copying up a whole tree. Report a cross-device
                # rename instead, so that tools fall back to copy and delete.
                if src.origin in ("RO", "RW_AND_RO") or dst.origin in ("RO", "RW_AND_RO"):
                    raise CrossBranchError("Cannot rename directories with read-only content", old)
                if dst_attrs is not None:
                    if not dst_attrs.is_dir:
                        raise NotADirectoryUnionError("Not a directory", new)
                    if not is_empty_dir(c, new):
                        raise NotEmptyError("Directory not empty", new)
            elif dst_attrs is not None and dst_attrs.is_dir:
                raise IsADirectoryUnionError("Is a directory", new)

            src_rw = copy_up(c, old)
            find_path(c, new)
            if dst.on_rw and dst_attrs is not None and dst_attrs.is_dir:
                remove_rw_directory(c, new, dst.rw_path)

            hide_old = ro_visible(c, old)
            created = create_whiteout(c, old) if hide_old else False
            try:
                os.rename(src_rw, dst.rw_path)
            except OSError:
                if created:
                    unlink_whiteout(c, old)
                raise
            if src_attrs.is_dir:
                hide_directory_contents(c, new)
            unlink_whiteout(c, new)
            delete_override(c, new)
            delete_override(c, old)
        logger.info(f"Renamed {old} to {new}")

    def setattr(self, path: str, caller: Caller, changes: AttributeChanges) -> Attributes:
        logger.debug(f"LOGICAL: Received setattr for {path=} {changes=}")
        c = self.config
        can_change_attributes(c, caller, path, changes)
        if changes.size is not None and resolve(c, path).origin == "RO":
            copy_up(c, path)
        return set_attributes(c, path, changes)


def _remove_entry(p: Path) -> None:
    if p.is_dir() and not p.is_symlink():
        shutil.rmtree(p)
    else:
        p.unlink()
