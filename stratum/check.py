"""
The check module finds and repairs reserved-namespace state that the union operations never leave
behind on their own, but that crashes, manual edits of the branches, or out-of-band changes to the
read-only branch can produce:

- leaked-temporary: a `.cu.` entry, left over from an interrupted copy-up, record rewrite, or
  directory removal.
- malformed-whiteout: a `.wh.` entry that is not an empty regular file.
- shadowed-whiteout: a whiteout next to a real read-write entry of the same name, left over from an
  interrupted removal. The real entry wins.
- orphan-whiteout: a whiteout with no read-only entry to hide.
- malformed-override: a `.me.` record that cannot be parsed.
- stale-override: a `.me.` record whose read-only entry is gone, or that sits next to a read-write
  entry (which carries its own attributes).

The checker is meant to be run against an unmounted union: in-flight operations legitimately hold
temporaries and short-lived shadowed whiteouts.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from stratum.common import InconsistentError
from stratum.config import Config
from stratum.locks import lock, path_lock_name
from stratum.overrides import read_override
from stratum.paths import (
    OVERRIDE_PREFIX,
    TEMPORARY_PREFIX,
    WHITEOUT_PREFIX,
    is_reserved_name,
    join,
    ro_path,
    rw_path,
)
from stratum.whiteouts import create_whiteout, hide_directory_contents

logger = logging.getLogger(__name__)

InconsistencyKind = Literal[
    "leaked-temporary",
    "malformed-whiteout",
    "shadowed-whiteout",
    "orphan-whiteout",
    "malformed-override",
    "stale-override",
]


@dataclass(frozen=True, slots=True)
class Inconsistency:
    kind: InconsistencyKind
    # The logical path the marker refers to. For temporaries, the path of the temporary itself.
    path: str
    # The offending entry on the read-write branch.
    marker: Path

    def __str__(self) -> str:
        return f"{self.kind}: {self.path} ({self.marker})"


def _lexists(p: Path) -> bool:
    try:
        os.lstat(p)
    except (FileNotFoundError, NotADirectoryError):
        return False
    return True


def check_union(c: Config) -> list[Inconsistency]:
    issues: list[Inconsistency] = []
    for root, dirnames, _ in os.walk(c.rw_branch):
        rootpath = Path(root)
        relative = rootpath.relative_to(c.rw_branch)
        logical_dir = "/" if relative == Path(".") else f"/{relative}"
        # Never descend into reserved directories; they are reported by their name below.
        dirnames[:] = [d for d in dirnames if not is_reserved_name(d)]
        names = sorted(os.listdir(rootpath))
        for name in names:
            marker = rootpath / name
            if name.startswith(TEMPORARY_PREFIX):
                issues.append(Inconsistency("leaked-temporary", join(logical_dir, name), marker))
            elif name.startswith(WHITEOUT_PREFIX):
                logical = join(logical_dir, name.removeprefix(WHITEOUT_PREFIX))
                st = os.lstat(marker)
                if not stat.S_ISREG(st.st_mode) or st.st_size != 0:
                    issues.append(Inconsistency("malformed-whiteout", logical, marker))
                elif _lexists(rw_path(c, logical)):
                    issues.append(Inconsistency("shadowed-whiteout", logical, marker))
                elif not _lexists(ro_path(c, logical)):
                    issues.append(Inconsistency("orphan-whiteout", logical, marker))
            elif name.startswith(OVERRIDE_PREFIX):
                logical = join(logical_dir, name.removeprefix(OVERRIDE_PREFIX))
                try:
                    read_override(c, logical)
                except (InconsistentError, IsADirectoryError):
                    issues.append(Inconsistency("malformed-override", logical, marker))
                    continue
                if _lexists(rw_path(c, logical)) or not _lexists(ro_path(c, logical)):
                    issues.append(Inconsistency("stale-override", logical, marker))
    for i in issues:
        logger.debug(f"Found inconsistency {i}")
    return issues


def _remove(p: Path) -> None:
    if p.is_dir() and not p.is_symlink():
        shutil.rmtree(p)
    else:
        with contextlib.suppress(FileNotFoundError):
            p.unlink()


def repair_union(c: Config, issues: list[Inconsistency]) -> int:
    """Repair the passed inconsistencies. Returns the number of repaired issues."""
    repaired = 0
    for i in issues:
        with lock(c, path_lock_name(i.path)):
            if i.kind == "malformed-whiteout":
                _remove(i.marker)
                # The marker was meant to hide something; hide it properly.
                if _lexists(ro_path(c, i.path)) and not _lexists(rw_path(c, i.path)):
                    create_whiteout(c, i.path)
            elif i.kind == "shadowed-whiteout":
                # The interrupted removal never happened. But the whiteout was opaque for the
                # read-only children of a directory, so keep them hidden before dropping it.
                if rw_path(c, i.path).is_dir() and ro_path(c, i.path).is_dir():
                    hide_directory_contents(c, i.path)
                _remove(i.marker)
            else:
                _remove(i.marker)
        logger.info(f"Repaired {i}")
        repaired += 1
    return repaired
