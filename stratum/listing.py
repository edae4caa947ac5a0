"""
The listing module presents the merged view of a directory: the union of the names on both branches,
minus the read-only names hidden by whiteouts, minus the reserved marker names.
"""

import contextlib
import logging
import os
from collections.abc import Iterator

from stratum.attributes import get_attributes
from stratum.common import NotADirectoryUnionError, NotFoundError
from stratum.config import Config
from stratum.overrides import Attributes
from stratum.paths import is_reserved_name, join, normalize, split
from stratum.resolver import resolve
from stratum.whiteouts import whiteouts_in

logger = logging.getLogger(__name__)


def _scan(p: os.PathLike[str]) -> set[str]:
    with os.scandir(p) as it:
        return {e.name for e in it if not is_reserved_name(e.name)}


def list_directory(c: Config, path: str) -> list[str]:
    path = normalize(path)
    loc = resolve(c, path)
    if loc.origin == "NONE":
        raise NotFoundError("No such file or directory", path)
    if not get_attributes(c, path, loc).is_dir:
        raise NotADirectoryUnionError("Not a directory", path)

    names: set[str] = set()
    if loc.on_rw:
        names |= _scan(loc.rw_path)
    if loc.origin in ("RO", "RW_AND_RO"):
        names |= _scan(loc.ro_path) - whiteouts_in(c, path)
    logger.debug(f"LOGICAL: Listed {len(names)} entries in {path} ({loc.origin})")
    return sorted(names)


def read_directory(c: Config, path: str) -> Iterator[tuple[str, Attributes]]:
    """Yield `(name, attributes)` for every entry of the merged directory, starting with `.` and `..`."""
    path = normalize(path)
    names = list_directory(c, path)
    yield ".", get_attributes(c, path)
    yield "..", get_attributes(c, split(path)[0] if path != "/" else "/")
    for name in names:
        # Entries may disappear between listing and stat-ing them.
        with contextlib.suppress(NotFoundError):
            yield name, get_attributes(c, join(path, name))


def is_empty_dir(c: Config, path: str) -> bool:
    return not list_directory(c, path)
