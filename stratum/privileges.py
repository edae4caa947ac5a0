"""
The privileges module holds the only two places where Stratum touches process credentials.

Whiteout markers must be creatable even when the requesting user could not write the entry they
hide, and they are owned by root. We model this as an explicit capability: `elevated()` acquires
superuser credentials immediately before the privileged call and drops them immediately after,
with a guaranteed release. Nothing else in the codebase runs with borrowed privileges.

Effective credentials are process-wide, so elevation is serialized with a lock.
"""

import contextlib
import logging
import os
import threading
from collections.abc import Iterator
from pathlib import Path

logger = logging.getLogger(__name__)

_elevation_lock = threading.Lock()


def is_privileged() -> bool:
    return os.geteuid() == 0


@contextlib.contextmanager
def elevated() -> Iterator[bool]:
    """
    Run the enclosed block with superuser credentials if the process can obtain them. Yields whether
    the block is running privileged; unprivileged daemons (e.g. in tests) still run the block.
    """
    with _elevation_lock:
        euid = os.geteuid()
        if euid == 0:
            yield True
            return
        _, _, saved_uid = os.getresuid()
        if saved_uid != 0:
            logger.debug(f"Cannot elevate from {euid=}: running the privileged call unprivileged")
            yield False
            return
        os.seteuid(0)
        try:
            yield True
        finally:
            os.seteuid(euid)


def apply_ownership(path: Path, uid: int, gid: int) -> None:
    """
    Give a freshly created branch entry the requested ownership. Only a privileged daemon can hand
    out ownership to other users, so an unprivileged daemon keeps its own.
    """
    st = os.lstat(path)
    if (st.st_uid, st.st_gid) == (uid, gid):
        return
    if not is_privileged():
        logger.debug(f"Not privileged: leaving {path} owned by {st.st_uid}:{st.st_gid} instead of {uid}:{gid}")
        return
    os.chown(path, uid, gid, follow_symlinks=False)
