"""
The overrides module stores attribute-only changes to read-only entries. Instead of copying a
read-only file up just to chmod it, we record the changed fields in a `.me.<name>` file next to
where the read-write copy would live, and overlay them on the read-only attributes when asked.

Records only hold fields that differ from the read-only original. A record with no fields is deleted.
The format is TOML. Readers ignore keys they don't know and writers carry them over, so that newer
versions can add fields without older versions destroying them.
"""

from __future__ import annotations

import contextlib
import logging
import os
import stat
from dataclasses import dataclass, field, fields
from typing import Any

import tomli_w
import tomllib

from stratum.common import InconsistentError
from stratum.config import Config, Origin
from stratum.paths import normalize, override_path, temporary_path

logger = logging.getLogger(__name__)

RECORD_HEADER = "# Stratum metadata override. Managed automatically: do not edit.\n"
RECORD_FIELDS = ("mode", "uid", "gid", "atime_ns", "mtime_ns")


@dataclass(slots=True)
class Attributes:
    origin: Origin
    st_mode: int
    st_nlink: int
    st_uid: int
    st_gid: int
    st_rdev: int
    st_size: int
    st_blksize: int
    st_blocks: int
    st_atime_ns: int
    st_mtime_ns: int
    st_ctime_ns: int

    @classmethod
    def from_stat(cls, st: os.stat_result, origin: Origin) -> Attributes:
        return Attributes(
            origin=origin,
            st_mode=st.st_mode,
            st_nlink=st.st_nlink,
            st_uid=st.st_uid,
            st_gid=st.st_gid,
            st_rdev=st.st_rdev,
            st_size=st.st_size,
            st_blksize=st.st_blksize,
            st_blocks=st.st_blocks,
            st_atime_ns=st.st_atime_ns,
            st_mtime_ns=st.st_mtime_ns,
            st_ctime_ns=st.st_ctime_ns,
        )

    def as_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @property
    def is_dir(self) -> bool:
        return stat.S_ISDIR(self.st_mode)


@dataclass(slots=True)
class AttributeChanges:
    """A partial update. `mode` holds permission bits only; the file type is never changed."""

    mode: int | None = None
    uid: int | None = None
    gid: int | None = None
    atime_ns: int | None = None
    mtime_ns: int | None = None
    size: int | None = None

    def empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))


@dataclass(slots=True)
class OverrideRecord:
    mode: int | None = None
    uid: int | None = None
    gid: int | None = None
    atime_ns: int | None = None
    mtime_ns: int | None = None
    # Keys this version does not understand, carried through rewrites untouched.
    extra: dict[str, Any] = field(default_factory=dict)
    # When the record was last written. Feeds the overlaid ctime; not serialized.
    written_ns: int = 0

    def empty(self) -> bool:
        return all(getattr(self, k) is None for k in RECORD_FIELDS)

    def serialize(self) -> str:
        # TOML does not have a Null Type, so unset fields are omitted.
        data: dict[str, Any] = dict(self.extra)
        for k in RECORD_FIELDS:
            v = getattr(self, k)
            if v is not None:
                data[k] = v
        return RECORD_HEADER + tomli_w.dumps(data)

    @classmethod
    def from_toml(cls, toml: str) -> OverrideRecord:
        data = tomllib.loads(toml)
        record = OverrideRecord()
        for k, v in data.items():
            if k not in RECORD_FIELDS:
                record.extra[k] = v
                continue
            if not isinstance(v, int) or isinstance(v, bool):
                raise ValueError(f"{k} must be an integer: got {v!r}")
            setattr(record, k, v)
        return record


def find_override(c: Config, path: str) -> bool:
    try:
        os.lstat(override_path(c, normalize(path)))
    except (FileNotFoundError, NotADirectoryError):
        return False
    return True


def read_override(c: Config, path: str) -> OverrideRecord | None:
    """Read the record for `path`. Returns None if there is no record."""
    p = override_path(c, normalize(path))
    try:
        with p.open("r") as fp:
            st = os.fstat(fp.fileno())
            text = fp.read()
    except (FileNotFoundError, NotADirectoryError):
        return None
    try:
        record = OverrideRecord.from_toml(text)
    except (tomllib.TOMLDecodeError, ValueError) as e:
        raise InconsistentError(f"Malformed metadata override record: {e}", str(p)) from e
    record.written_ns = st.st_mtime_ns
    return record


def write_override(c: Config, path: str, record: OverrideRecord) -> None:
    """
    Atomically replace the record for `path`: the new record is written to a temporary in the same
    directory and renamed over the old one, so readers see either the old or the new record.
    """
    path = normalize(path)
    p = override_path(c, path)
    tmp = temporary_path(p.parent)
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    try:
        with os.fdopen(fd, "w") as fp:
            fp.write(record.serialize())
        os.replace(tmp, p)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise
    logger.debug(f"LOGICAL: Wrote metadata override for {path}: {record.serialize()!r}")


def delete_override(c: Config, path: str) -> bool:
    path = normalize(path)
    try:
        os.unlink(override_path(c, path))
    except (FileNotFoundError, NotADirectoryError):
        return False
    logger.debug(f"LOGICAL: Deleted metadata override for {path}")
    return True


def overlay_attributes(attrs: Attributes, record: OverrideRecord | None) -> Attributes:
    """Apply a record to read-only attributes. The file type bits always come from the original."""
    if record is None:
        return attrs
    if record.mode is not None:
        attrs.st_mode = stat.S_IFMT(attrs.st_mode) | stat.S_IMODE(record.mode)
    if record.uid is not None:
        attrs.st_uid = record.uid
    if record.gid is not None:
        attrs.st_gid = record.gid
    if record.atime_ns is not None:
        attrs.st_atime_ns = record.atime_ns
    if record.mtime_ns is not None:
        attrs.st_mtime_ns = record.mtime_ns
    attrs.st_ctime_ns = max(attrs.st_ctime_ns, record.written_ns)
    return attrs


def prune_record(record: OverrideRecord, original: os.stat_result) -> OverrideRecord:
    """Drop every field that equals the read-only original, so the record only holds real changes."""
    if record.mode is not None and stat.S_IMODE(record.mode) == stat.S_IMODE(original.st_mode):
        record.mode = None
    if record.uid == original.st_uid:
        record.uid = None
    if record.gid == original.st_gid:
        record.gid = None
    if record.atime_ns == original.st_atime_ns:
        record.atime_ns = None
    if record.mtime_ns == original.st_mtime_ns:
        record.mtime_ns = None
    return record
