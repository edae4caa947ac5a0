"""
The locks module serializes multi-step mutations of a single logical path. Single branch primitives
(create, rename, unlink) are atomic on their own, but sequences like copy-up or unlink-then-whiteout
are not: two callers racing through them could both pass the origin check and both materialize a
writable copy. Every such sequence runs under `lock(c, path_lock_name(path))`.

Locks are reentrant, so an operation holding a path's lock may call into another operation that
takes the same lock (e.g. rename copying up its source). Entries are dropped from the table once the
last holder or waiter leaves.

Lock order: a descendant is locked before its ancestors, and paths of equal depth in name order.
Operations lock their own path first and then, one at a time, the ancestors they create on the
read-write branch (see `find_path`). Anything that needs several paths at once takes them
all up front with `lock_many`, which follows the same order.
"""

import contextlib
import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field

from stratum.config import Config
from stratum.paths import normalize

logger = logging.getLogger(__name__)


@dataclass
class _LockEntry:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


_table_lock = threading.Lock()
_table: dict[str, _LockEntry] = {}


def path_lock_name(path: str) -> str:
    return f"path:{normalize(path)}"


@contextlib.contextmanager
def lock(c: Config, name: str) -> Iterator[None]:
    key = f"{c.rw_branch}:{name}"
    with _table_lock:
        entry = _table.setdefault(key, _LockEntry())
        entry.users += 1
    try:
        logger.debug(f"Attempting to acquire lock for {name}")
        with entry.lock:
            logger.debug(f"Successfully acquired lock for {name}")
            yield
        logger.debug(f"Released lock {name}")
    finally:
        with _table_lock:
            entry.users -= 1
            if entry.users == 0:
                del _table[key]


def lock_order(names: list[str]) -> list[str]:
    """Deepest paths first, then by name."""
    return sorted(set(names), key=lambda n: (-n.count("/"), n))


@contextlib.contextmanager
def lock_many(c: Config, names: list[str]) -> Iterator[None]:
    """Acquire several locks in lock order, so that two callers cannot deadlock."""
    with contextlib.ExitStack() as stack:
        for name in lock_order(names):
            stack.enter_context(lock(c, name))
        yield


def held_locks() -> int:
    """Number of live lock table entries. Exposed for tests."""
    with _table_lock:
        return len(_table)
