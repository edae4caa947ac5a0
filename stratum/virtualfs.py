"""
The virtualfs module exposes the union as a FUSE filesystem. It is a thin adapter: every
path-based decision is delegated to `UnionCore`, and this module only handles what the llfuse
library makes us handle ourselves:

1. Inodes. llfuse addresses entries by inode, so `INodeMapper` assigns inodes to logical paths and
   keeps the mapping up to date across renames and removals.
2. File handles. The core returns concrete branch paths for open and create; we open those on the
   host and hand out wrapped file handles (`FileHandleManager`). Reads and writes are passed through
   to the host file descriptors untouched.
3. Callers. The request context only carries a uid, gid and pid. We look up the caller's
   supplementary groups and cache the resulting identity for a few seconds.
4. Errors. The core raises `OSError`s carrying the right errno (the union error taxonomy is built
   on them), which we forward to the kernel as `llfuse.FUSEError`s.

llfuse serializes request handlers with a global lock. Handlers that may copy data (open for
writing, truncation, rename) release it while the core works; the core is safe to call concurrently.
"""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import random
import subprocess
from collections.abc import Callable, Iterator
from typing import Any, TypeVar

import llfuse
from cachetools import TTLCache

from stratum.access import Caller
from stratum.common import PermissionDeniedError
from stratum.config import Config
from stratum.core import UnionCore
from stratum.overrides import AttributeChanges, Attributes
from stratum.paths import join, normalize, split

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bounds of the attribute and caller caches. Expired entries are evicted on insertion, so
# the caches stay bounded no matter how many processes touch the mount.
ATTR_CACHE_SIZE = 16384
CALLER_CACHE_SIZE = 1024


class FileHandleManager:
    """
    FileHandleManager generates file handles and maps them to host file descriptors. We never hand
    out host file descriptors directly, so that a handle we generate for a directory listing can
    never collide with a host descriptor. Assumes that we do not cycle 10k file handles before the
    first one is released.
    """

    def __init__(self) -> None:
        self._state = 10
        self._wrapped_to_host_map: dict[int, int] = {}

    def next(self) -> int:
        self._state = max(10, (self._state + 1) % 10_000)
        return self._state

    def wrap_host(self, host_fh: int) -> int:
        fh = self.next()
        self._wrapped_to_host_map[fh] = host_fh
        return fh

    def unwrap_host(self, fh: int) -> int:
        try:
            return self._wrapped_to_host_map[fh]
        except KeyError as e:
            raise llfuse.FUSEError(errno.EBADF) from e

    def release_host(self, fh: int) -> int:
        try:
            return self._wrapped_to_host_map.pop(fh)
        except KeyError as e:
            raise llfuse.FUSEError(errno.EBADF) from e


class INodeMapper:
    """
    INodeMapper manages the mapping of inodes to logical paths in our filesystem. Inodes are handed
    out in order of first sight and are not stable across mounts.
    """

    def __init__(self) -> None:
        self._inode_to_path_map: dict[int, str] = {llfuse.ROOT_INODE: "/"}
        self._path_to_inode_map: dict[str, int] = {"/": llfuse.ROOT_INODE}
        self._next_inode_ctr: int = llfuse.ROOT_INODE + 1

    def _next_inode(self) -> int:
        # Increment to infinity.
        cur = self._next_inode_ctr
        self._next_inode_ctr += 1
        return cur

    def get_path(self, inode: int, name: bytes | None = None) -> str:
        """
        Raises ENOENT if the inode doesn't exist. If the inode is of a directory, you can optionally
        pass `name`, which will be concatenated to the directory.
        """
        try:
            path = self._inode_to_path_map[inode]
            if not name or name == b".":
                return path
            if name == b"..":
                return split(path)[0] if path != "/" else path
            return join(path, os.fsdecode(name))
        except KeyError as e:
            raise llfuse.FUSEError(errno.ENOENT) from e

    def calc_inode(self, path: str) -> int:
        """
        Get the inode of a path. If we've seen the path before, return the cached inode. Otherwise,
        generate a new inode and cache it for future accesses.
        """
        path = normalize(path)
        try:
            return self._path_to_inode_map[path]
        except KeyError:
            inode = self._next_inode()
            self._path_to_inode_map[path] = inode
            self._inode_to_path_map[inode] = path
            return inode

    def remove_path(self, path: str) -> None:
        path = normalize(path)
        try:
            inode = self._path_to_inode_map.pop(path)
        except KeyError:
            return
        del self._inode_to_path_map[inode]

    def rename_path(self, old_path: str, new_path: str) -> None:
        """Move `old_path` and everything we know beneath it to `new_path`."""
        old_path = normalize(old_path)
        new_path = normalize(new_path)
        self.remove_path(new_path)
        moved = [
            p for p in self._path_to_inode_map if p == old_path or p.startswith(old_path + "/")
        ]
        for p in moved:
            inode = self._path_to_inode_map.pop(p)
            renamed = new_path + p.removeprefix(old_path)
            self._path_to_inode_map[renamed] = inode
            self._inode_to_path_map[inode] = renamed


def _read_groups(pid: int) -> tuple[int, ...]:
    try:
        with open(f"/proc/{pid}/status") as fp:
            for line in fp:
                if line.startswith("Groups:"):
                    return tuple(int(g) for g in line.split()[1:])
    except (FileNotFoundError, ProcessLookupError, PermissionError):
        # The process exited before we got to look at it.
        pass
    return ()


class VirtualFS(llfuse.Operations):  # type: ignore
    """
    This is the virtual filesystem class, which implements commands by delegating the union logic
    to UnionCore and the inode/fd<->path tracking to INodeMapper.
    """

    def __init__(self, config: Config):
        self.core = UnionCore(config)
        self.fhandler = FileHandleManager()
        self.inodes = INodeMapper()
        self.default_attrs = {
            # Inodes change across restarts; a random generation tells NFS-style clients as much.
            "generation": random.randint(0, 1000000),
            "entry_timeout": 1,
            "attr_timeout": 1,
        }
        # After a ls, getattr is serially called for each item in the directory. Whenever we have a
        # readdir, we populate the getattr and lookup caches. The cache is only valid for a second,
        # and is reset on every mutation.
        self.getattr_cache: TTLCache[int, llfuse.EntryAttributes]
        self.lookup_cache: TTLCache[tuple[int, bytes], llfuse.EntryAttributes]
        self.reset_getattr_caches()
        # Programs invoke readdir multiple times with offsets. We load the listing once in
        # `opendir`, associate the results with a file handle, and yield results from that handle
        # in `readdir`. We delete the state in `releasedir`.
        #
        # Map of file handle -> (parent inode, child name, child attributes).
        self.readdir_cache: dict[int, list[tuple[int, bytes, llfuse.EntryAttributes]]] = {}
        self.caller_cache: TTLCache[tuple[int, int, int], Caller] = TTLCache(maxsize=CALLER_CACHE_SIZE, ttl=5)

    def reset_getattr_caches(self) -> None:
        self.getattr_cache = TTLCache(maxsize=ATTR_CACHE_SIZE, ttl=1)
        self.lookup_cache = TTLCache(maxsize=ATTR_CACHE_SIZE, ttl=1)

    def make_entry_attributes(self, attrs: Attributes, inode: int) -> llfuse.EntryAttributes:
        entry = llfuse.EntryAttributes()
        for k, v in self.default_attrs.items():
            setattr(entry, k, v)
        for k, v in attrs.as_dict().items():
            if k.startswith("st_"):
                setattr(entry, k, v)
        entry.st_ino = inode
        return entry

    def caller(self, ctx: Any) -> Caller:
        key = (ctx.uid, ctx.gid, ctx.pid)
        with contextlib.suppress(KeyError):
            return self.caller_cache[key]
        caller = Caller(uid=ctx.uid, gid=ctx.gid, groups=_read_groups(ctx.pid))
        self.caller_cache[key] = caller
        return caller

    def _call(self, fn: Callable[..., T], *args: Any, release: bool = False) -> T:
        """Invoke the core, translating its errors for the kernel."""
        try:
            if release:
                with llfuse.lock_released:
                    return fn(*args)
            return fn(*args)
        except OSError as e:
            logger.debug(f"FUSE: Core raised {e!r}")
            raise llfuse.FUSEError(e.errno or errno.EIO) from e

    def _entry(self, path: str, attrs: Attributes) -> llfuse.EntryAttributes:
        return self.make_entry_attributes(attrs, self.inodes.calc_inode(path))

    # ============================================================================================
    # Reads
    # ============================================================================================

    def getattr(self, inode: int, ctx: Any) -> llfuse.EntryAttributes:
        logger.debug(f"FUSE: Received getattr for {inode=}")
        # For performance, pull from the getattr cache if possible.
        with contextlib.suppress(KeyError):
            return self.getattr_cache[inode]
        path = self.inodes.get_path(inode)
        logger.debug(f"FUSE: Resolved getattr {inode=} to {path=}")
        attrs = self._call(self.core.getattr, path, self.caller(ctx))
        return self.make_entry_attributes(attrs, inode)

    def lookup(self, parent_inode: int, name: bytes, ctx: Any) -> llfuse.EntryAttributes:
        logger.debug(f"FUSE: Received lookup for {parent_inode=}/{name=}")
        with contextlib.suppress(KeyError):
            return self.lookup_cache[(parent_inode, name)]
        path = self.inodes.get_path(parent_inode, name)
        logger.debug(f"FUSE: Resolved lookup {parent_inode=}/{name=} to {path=}")
        attrs = self._call(self.core.getattr, path, self.caller(ctx))
        return self._entry(path, attrs)

    def access(self, inode: int, mode: int, ctx: Any) -> bool:
        logger.debug(f"FUSE: Received access for {inode=} {mode=}")
        path = self.inodes.get_path(inode)
        try:
            self.core.access(path, self.caller(ctx), mode)
        except PermissionDeniedError:
            return False
        except OSError as e:
            raise llfuse.FUSEError(e.errno or errno.EIO) from e
        return True

    def readlink(self, inode: int, ctx: Any) -> bytes:
        logger.debug(f"FUSE: Received readlink for {inode=}")
        path = self.inodes.get_path(inode)
        return os.fsencode(self._call(self.core.readlink, path, self.caller(ctx)))

    def opendir(self, inode: int, ctx: Any) -> int:
        logger.debug(f"FUSE: Received opendir for {inode=}")
        path = self.inodes.get_path(inode)
        logger.debug(f"FUSE: Resolved opendir {inode=} to {path=}")
        entries: list[tuple[int, bytes, llfuse.EntryAttributes]] = []
        for namestr, attrs in self._call(self.core.readdir, path, self.caller(ctx)):
            if namestr == ".":
                child_inode = inode
            elif namestr == "..":
                child_inode = self.inodes.calc_inode(split(path)[0] if path != "/" else path)
            else:
                child_inode = self.inodes.calc_inode(join(path, namestr))
            entries.append((inode, os.fsencode(namestr), self.make_entry_attributes(attrs, child_inode)))
        fh = self.fhandler.next()
        self.readdir_cache[fh] = entries
        logger.debug(f"FUSE: Stored {len(entries)=} nodes into the readdir cache for {fh=}")
        return fh

    def readdir(self, fh: int, offset: int = 0) -> Iterator[tuple[bytes, llfuse.EntryAttributes, int]]:
        logger.debug(f"FUSE: Received readdir for {fh=} {offset=}")
        try:
            entries = self.readdir_cache[fh]
        except KeyError:
            return
        for i, (parent_inode, name, entry) in enumerate(entries[offset:]):
            if name not in (b".", b".."):
                self.getattr_cache[entry.st_ino] = entry
                self.lookup_cache[(parent_inode, name)] = entry
            yield name, entry, i + offset + 1

    def releasedir(self, fh: int) -> None:
        with contextlib.suppress(KeyError):
            del self.readdir_cache[fh]

    def statfs(self, ctx: Any) -> llfuse.StatvfsData:
        logger.debug("FUSE: Received statfs")
        st = self._call(self.core.statfs)
        data = llfuse.StatvfsData()
        for attr in ("f_bsize", "f_frsize", "f_blocks", "f_bfree", "f_bavail", "f_files", "f_ffree", "f_favail"):
            setattr(data, attr, getattr(st, attr))
        data.f_namemax = st.f_namemax
        return data

    # ============================================================================================
    # File I/O
    # ============================================================================================

    def open(self, inode: int, flags: int, ctx: Any) -> int:
        logger.debug(f"FUSE: Received open for {inode=} {flags=}")
        path = self.inodes.get_path(inode)
        logger.debug(f"FUSE: Resolved open {inode=} to {path=}")
        concrete = self._call(self.core.open, path, self.caller(ctx), flags, release=True)
        try:
            host_fh = os.open(concrete, flags & ~(os.O_CREAT | os.O_EXCL))
        except OSError as e:
            raise llfuse.FUSEError(e.errno or errno.EIO) from e
        if flags & (os.O_WRONLY | os.O_RDWR | os.O_TRUNC):
            self.reset_getattr_caches()
        return self.fhandler.wrap_host(host_fh)

    def create(
        self,
        parent_inode: int,
        name: bytes,
        mode: int,
        flags: int,
        ctx: Any,
    ) -> tuple[int, llfuse.EntryAttributes]:
        logger.debug(f"FUSE: Received create for {parent_inode=}/{name=} {mode=} {flags=}")
        path = self.inodes.get_path(parent_inode, name)
        mode &= ~getattr(ctx, "umask", 0)
        concrete, attrs = self._call(self.core.create, path, self.caller(ctx), mode)
        try:
            host_fh = os.open(concrete, flags & ~(os.O_CREAT | os.O_EXCL))
        except OSError as e:
            raise llfuse.FUSEError(e.errno or errno.EIO) from e
        self.reset_getattr_caches()
        return self.fhandler.wrap_host(host_fh), self._entry(path, attrs)

    def read(self, fh: int, offset: int, length: int) -> bytes:
        logger.debug(f"FUSE: Received read for {fh=} {offset=} {length=}")
        host_fh = self.fhandler.unwrap_host(fh)
        try:
            return os.pread(host_fh, length, offset)
        except OSError as e:
            raise llfuse.FUSEError(e.errno or errno.EIO) from e

    def write(self, fh: int, offset: int, data: bytes) -> int:
        logger.debug(f"FUSE: Received write for {fh=} {offset=} {len(data)=}")
        host_fh = self.fhandler.unwrap_host(fh)
        try:
            return os.pwrite(host_fh, data, offset)
        except OSError as e:
            raise llfuse.FUSEError(e.errno or errno.EIO) from e
        finally:
            self.reset_getattr_caches()

    def flush(self, fh: int) -> None:
        logger.debug(f"FUSE: Received flush for {fh=}")

    def fsync(self, fh: int, datasync: bool) -> None:
        logger.debug(f"FUSE: Received fsync for {fh=} {datasync=}")
        host_fh = self.fhandler.unwrap_host(fh)
        try:
            if datasync:
                os.fdatasync(host_fh)
            else:
                os.fsync(host_fh)
        except OSError as e:
            raise llfuse.FUSEError(e.errno or errno.EIO) from e

    def release(self, fh: int) -> None:
        logger.debug(f"FUSE: Received release for {fh=}")
        os.close(self.fhandler.release_host(fh))

    # ============================================================================================
    # Namespace changes
    # ============================================================================================

    def mknod(self, parent_inode: int, name: bytes, mode: int, rdev: int, ctx: Any) -> llfuse.EntryAttributes:
        logger.debug(f"FUSE: Received mknod for {parent_inode=}/{name=} {mode=} {rdev=}")
        path = self.inodes.get_path(parent_inode, name)
        mode &= ~getattr(ctx, "umask", 0)
        attrs = self._call(self.core.mknod, path, self.caller(ctx), mode, rdev)
        self.reset_getattr_caches()
        return self._entry(path, attrs)

    def mkdir(self, parent_inode: int, name: bytes, mode: int, ctx: Any) -> llfuse.EntryAttributes:
        logger.debug(f"FUSE: Received mkdir for {parent_inode=}/{name=} {mode=}")
        path = self.inodes.get_path(parent_inode, name)
        mode &= ~getattr(ctx, "umask", 0)
        attrs = self._call(self.core.mkdir, path, self.caller(ctx), mode)
        self.reset_getattr_caches()
        return self._entry(path, attrs)

    def symlink(self, parent_inode: int, name: bytes, target: bytes, ctx: Any) -> llfuse.EntryAttributes:
        logger.debug(f"FUSE: Received symlink for {parent_inode=}/{name=} {target=}")
        path = self.inodes.get_path(parent_inode, name)
        attrs = self._call(self.core.symlink, path, self.caller(ctx), os.fsdecode(target))
        self.reset_getattr_caches()
        return self._entry(path, attrs)

    def link(self, inode: int, new_parent_inode: int, new_name: bytes, ctx: Any) -> llfuse.EntryAttributes:
        logger.debug(f"FUSE: Received link for {inode=} to {new_parent_inode=}/{new_name=}")
        src = self.inodes.get_path(inode)
        dst = self.inodes.get_path(new_parent_inode, new_name)
        attrs = self._call(self.core.link, src, dst, self.caller(ctx))
        self.reset_getattr_caches()
        return self._entry(dst, attrs)

    def unlink(self, parent_inode: int, name: bytes, ctx: Any) -> None:
        logger.debug(f"FUSE: Received unlink for {parent_inode=}/{name=}")
        path = self.inodes.get_path(parent_inode, name)
        self._call(self.core.unlink, path, self.caller(ctx))
        self.reset_getattr_caches()
        self.inodes.remove_path(path)

    def rmdir(self, parent_inode: int, name: bytes, ctx: Any) -> None:
        logger.debug(f"FUSE: Received rmdir for {parent_inode=}/{name=}")
        path = self.inodes.get_path(parent_inode, name)
        self._call(self.core.rmdir, path, self.caller(ctx))
        self.reset_getattr_caches()
        self.inodes.remove_path(path)

    def rename(
        self,
        old_parent_inode: int,
        old_name: bytes,
        new_parent_inode: int,
        new_name: bytes,
        ctx: Any,
    ) -> None:
        old_path = self.inodes.get_path(old_parent_inode, old_name)
        new_path = self.inodes.get_path(new_parent_inode, new_name)
        logger.debug(f"FUSE: Received rename for {old_path=} to {new_path=}")
        self._call(self.core.rename, old_path, new_path, self.caller(ctx), release=True)
        self.reset_getattr_caches()
        self.inodes.rename_path(old_path, new_path)

    def setattr(
        self,
        inode: int,
        attr: llfuse.EntryAttributes,
        fields: llfuse.SetattrFields,
        fh: int | None,
        ctx: Any,
    ) -> llfuse.EntryAttributes:
        logger.debug(f"FUSE: Received setattr for {inode=} {fields=} {fh=}")
        path = self.inodes.get_path(inode)
        changes = AttributeChanges(
            mode=attr.st_mode if fields.update_mode else None,
            uid=attr.st_uid if fields.update_uid else None,
            gid=attr.st_gid if fields.update_gid else None,
            atime_ns=attr.st_atime_ns if fields.update_atime else None,
            mtime_ns=attr.st_mtime_ns if fields.update_mtime else None,
            size=attr.st_size if fields.update_size else None,
        )
        attrs = self._call(self.core.setattr, path, self.caller(ctx), changes, release=True)
        self.reset_getattr_caches()
        return self.make_entry_attributes(attrs, inode)

    def forget(self, inode_list: list[tuple[int, int]]) -> None:
        logger.debug(f"FUSE: Received forget for {inode_list=}")
        # Clear the cache in case someone makes a request later...
        self.reset_getattr_caches()

    # ============================================================================================
    # Extended attributes are not supported. Tools expect these syscalls to exist, so we implement
    # versions of them that report that no attributes exist.
    # ============================================================================================

    def getxattr(self, inode: int, name: bytes, ctx: Any) -> bytes:
        logger.debug(f"FUSE: Received getxattr for {inode=} {name=}")
        raise llfuse.FUSEError(llfuse.ENOATTR)

    def listxattr(self, inode: int, ctx: Any) -> Iterator[bytes]:
        logger.debug(f"FUSE: Received listxattr for {inode=}")
        return iter([])


def mount_virtualfs(c: Config, debug: bool = False) -> None:
    options = set(llfuse.default_options)
    options.add("fsname=stratum")
    if c.allow_other:
        options.add("allow_other")
    if debug:
        options.add("debug")
    llfuse.init(VirtualFS(c), str(c.mount_dir), options)
    try:
        llfuse.main(workers=c.max_proc)
    finally:
        llfuse.close()


def unmount_virtualfs(c: Config) -> None:
    subprocess.run(["umount", str(c.mount_dir)])
