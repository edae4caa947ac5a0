import os

from stratum.check import Inconsistency, check_union, repair_union
from stratum.config import Config
from stratum.overrides import OverrideRecord, write_override
from stratum.resolver import resolve
from stratum.whiteouts import create_whiteout


def _kinds(issues: list[Inconsistency]) -> dict[str, str]:
    return {i.path: i.kind for i in issues}


def test_clean_union(seeded_ro: Config) -> None:
    c = seeded_ro
    (c.rw_branch / "docs").mkdir()
    create_whiteout(c, "/docs/guide.txt")
    write_override(c, "/readme", OverrideRecord(mode=0o600))
    assert check_union(c) == []


def test_detects_leaked_temporary(seeded_ro: Config) -> None:
    c = seeded_ro
    (c.rw_branch / "docs").mkdir()
    (c.rw_branch / "docs" / ".cu.0123").write_text("partial")
    (c.rw_branch / ".cu.4567").mkdir()
    (c.rw_branch / ".cu.4567" / "child").touch()
    issues = check_union(c)
    # The temporary directory is reported once and not descended into.
    assert _kinds(issues) == {"/docs/.cu.0123": "leaked-temporary", "/.cu.4567": "leaked-temporary"}
    assert repair_union(c, issues) == 2
    assert list(c.rw_branch.rglob(".cu.*")) == []
    assert check_union(c) == []


def test_detects_orphan_whiteout(seeded_ro: Config) -> None:
    c = seeded_ro
    create_whiteout(c, "/gone")
    issues = check_union(c)
    assert _kinds(issues) == {"/gone": "orphan-whiteout"}
    assert str(issues[0]) == f"orphan-whiteout: /gone ({c.rw_branch / '.wh.gone'})"
    repair_union(c, issues)
    assert not (c.rw_branch / ".wh.gone").exists()


def test_repairs_malformed_whiteout(seeded_ro: Config) -> None:
    c = seeded_ro
    (c.rw_branch / ".wh.readme").write_text("not empty")
    issues = check_union(c)
    assert _kinds(issues) == {"/readme": "malformed-whiteout"}
    repair_union(c, issues)
    # The entry stays hidden behind a well-formed whiteout.
    st = os.lstat(c.rw_branch / ".wh.readme")
    assert st.st_size == 0
    assert resolve(c, "/readme").origin == "NONE"
    assert check_union(c) == []


def test_repairs_shadowed_whiteout(seeded_ro: Config) -> None:
    c = seeded_ro
    (c.rw_branch / "readme").write_text("copied")
    create_whiteout(c, "/readme")
    (c.rw_branch / "docs").mkdir()
    create_whiteout(c, "/docs")
    issues = check_union(c)
    assert _kinds(issues) == {"/readme": "shadowed-whiteout", "/docs": "shadowed-whiteout"}
    assert resolve(c, "/docs/guide.txt").origin == "NONE"

    repair_union(c, issues)
    assert not (c.rw_branch / ".wh.readme").exists()
    assert not (c.rw_branch / ".wh.docs").exists()
    assert resolve(c, "/readme").origin == "RW"
    # The read-only children stay hidden once the opaque whiteout is gone.
    assert resolve(c, "/docs").origin == "RW_AND_RO"
    assert resolve(c, "/docs/guide.txt").origin == "NONE"
    assert resolve(c, "/docs/sub").origin == "NONE"
    assert check_union(c) == []


def test_detects_override_problems(seeded_ro: Config) -> None:
    c = seeded_ro
    (c.rw_branch / ".me.readme").write_text("mode = 'nope'")
    write_override(c, "/gone", OverrideRecord(mode=0o600))
    (c.rw_branch / "docs").mkdir()
    (c.rw_branch / "docs" / "guide.txt").write_text("copied")
    write_override(c, "/docs/guide.txt", OverrideRecord(mode=0o600))
    issues = check_union(c)
    assert _kinds(issues) == {
        "/readme": "malformed-override",
        "/gone": "stale-override",
        "/docs/guide.txt": "stale-override",
    }
    assert repair_union(c, issues) == 3
    assert list(c.rw_branch.rglob(".me.*")) == []


def test_dot_names_map_to_logical_paths(seeded_ro: Config) -> None:
    c = seeded_ro
    (c.rw_branch / ".config").mkdir()
    create_whiteout(c, "/.config/gone")
    assert _kinds(check_union(c)) == {"/.config/gone": "orphan-whiteout"}
