import os
import stat

import pytest

from stratum.common import NotADirectoryUnionError, NotFoundError
from stratum.config import Config
from stratum.overrides import OverrideRecord, find_override, write_override
from stratum.resolver import find_path, resolve
from stratum.whiteouts import create_whiteout


def test_resolve_origins(seeded_ro: Config) -> None:
    c = seeded_ro
    assert resolve(c, "/").origin == "RW_AND_RO"
    assert resolve(c, "/readme").origin == "RO"
    assert resolve(c, "/docs").origin == "RO"
    assert resolve(c, "/docs/sub/deep.txt").origin == "RO"
    assert resolve(c, "/nope").origin == "NONE"
    assert resolve(c, "/readme/child").origin == "NONE"

    (c.rw_branch / "mine").write_text("mine")
    assert resolve(c, "/mine").origin == "RW"
    (c.rw_branch / "docs").mkdir()
    assert resolve(c, "/docs").origin == "RW_AND_RO"
    # The read-write branch wins over the read-only one.
    (c.rw_branch / "readme").write_text("copied")
    loc = resolve(c, "/readme")
    assert loc.origin == "RW"
    assert loc.concrete == c.rw_branch / "readme"


def test_resolve_normalizes(seeded_ro: Config) -> None:
    loc = resolve(seeded_ro, "/docs/../docs/./guide.txt/")
    assert loc.path == "/docs/guide.txt"
    assert loc.ro_path == seeded_ro.ro_branch / "docs" / "guide.txt"


def test_resolve_whiteouts(seeded_ro: Config) -> None:
    c = seeded_ro
    create_whiteout(c, "/readme")
    loc = resolve(c, "/readme")
    assert loc.origin == "NONE"
    with pytest.raises(NotFoundError):
        _ = loc.concrete
    create_whiteout(c, "/docs")
    assert resolve(c, "/docs").origin == "NONE"
    assert resolve(c, "/docs/sub/deep.txt").origin == "NONE"


def test_resolve_reserved_names(seeded_ro: Config) -> None:
    c = seeded_ro
    create_whiteout(c, "/readme")
    assert resolve(c, "/.wh.readme").origin == "NONE"
    (c.rw_branch / ".cu.0000").touch()
    assert resolve(c, "/.cu.0000").origin == "NONE"


def test_resolve_shadowed_whiteout_prefers_read_write(seeded_ro: Config) -> None:
    # The state left behind by a crash in the middle of a removal.
    c = seeded_ro
    (c.rw_branch / "docs").mkdir()
    create_whiteout(c, "/docs")
    assert resolve(c, "/docs").origin == "RW"
    assert resolve(c, "/docs/guide.txt").origin == "NONE"


def test_find_path_creates_ancestors(seeded_ro: Config) -> None:
    c = seeded_ro
    os.chmod(c.ro_branch / "docs" / "sub", 0o750)
    write_override(c, "/docs", OverrideRecord(mode=0o700))
    ro_st = os.lstat(c.ro_branch / "docs" / "sub")

    parent = find_path(c, "/docs/sub/deep.txt")
    assert parent == c.rw_branch / "docs" / "sub"
    assert parent.is_dir()
    assert stat.S_IMODE(os.lstat(c.rw_branch / "docs").st_mode) == 0o700
    st = os.lstat(parent)
    assert stat.S_IMODE(st.st_mode) == 0o750
    assert st.st_mtime_ns == ro_st.st_mtime_ns
    # The override record was folded into the new directory.
    assert not find_override(c, "/docs")
    # Nothing but the directories was created.
    assert [p.name for p in c.rw_branch.iterdir()] == ["docs"]
    assert [p.name for p in (c.rw_branch / "docs").iterdir()] == ["sub"]
    # Idempotent.
    assert find_path(c, "/docs/sub/deep.txt") == parent


def test_find_path_failures(seeded_ro: Config) -> None:
    c = seeded_ro
    with pytest.raises(NotFoundError):
        find_path(c, "/nope/file")
    with pytest.raises(NotADirectoryUnionError):
        find_path(c, "/readme/file")
    create_whiteout(c, "/docs")
    with pytest.raises(NotFoundError):
        find_path(c, "/docs/sub/file")
