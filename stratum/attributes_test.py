import os
import stat

import pytest

from stratum.attributes import get_attributes, set_attributes
from stratum.common import InvalidArgumentError, NotFoundError
from stratum.config import Config
from stratum.overrides import AttributeChanges, find_override, read_override
from stratum.whiteouts import create_whiteout


def test_get_attributes_by_origin(seeded_ro: Config) -> None:
    c = seeded_ro
    ro_st = os.lstat(c.ro_branch / "readme")
    attrs = get_attributes(c, "/readme")
    assert attrs.origin == "RO"
    assert attrs.st_size == ro_st.st_size
    assert attrs.st_mode == ro_st.st_mode

    (c.rw_branch / "mine").write_text("four")
    attrs = get_attributes(c, "/mine")
    assert attrs.origin == "RW"
    assert attrs.st_size == 4

    assert get_attributes(c, "/").origin == "RW_AND_RO"
    assert get_attributes(c, "/link").origin == "RO"
    assert stat.S_ISLNK(get_attributes(c, "/link").st_mode)

    with pytest.raises(NotFoundError):
        get_attributes(c, "/nope")
    create_whiteout(c, "/readme")
    with pytest.raises(NotFoundError):
        get_attributes(c, "/readme")


def test_set_attributes_read_only_records_override(seeded_ro: Config) -> None:
    c = seeded_ro
    ro_st = os.lstat(c.ro_branch / "readme")
    attrs = set_attributes(c, "/readme", AttributeChanges(mode=0o600, mtime_ns=10**18))
    assert attrs.origin == "RO"
    assert stat.S_IMODE(attrs.st_mode) == 0o600
    assert stat.S_ISREG(attrs.st_mode)
    assert attrs.st_mtime_ns == 10**18
    # The read-only entry is untouched and nothing was copied up.
    assert os.lstat(c.ro_branch / "readme").st_mode == ro_st.st_mode
    assert not (c.rw_branch / "readme").exists()
    record = read_override(c, "/readme")
    assert record is not None
    assert record.mode == 0o600
    assert record.uid is None


def test_set_attributes_reverting_deletes_record(seeded_ro: Config) -> None:
    c = seeded_ro
    ro_st = os.lstat(c.ro_branch / "readme")
    set_attributes(c, "/readme", AttributeChanges(mode=0o600))
    assert find_override(c, "/readme")
    attrs = set_attributes(c, "/readme", AttributeChanges(mode=stat.S_IMODE(ro_st.st_mode)))
    assert not find_override(c, "/readme")
    assert attrs.st_mode == ro_st.st_mode


def test_set_attributes_nested_read_only_creates_parent(seeded_ro: Config) -> None:
    c = seeded_ro
    set_attributes(c, "/docs/sub/deep.txt", AttributeChanges(mode=0o640))
    assert (c.rw_branch / "docs" / "sub" / ".me.deep.txt").is_file()
    assert get_attributes(c, "/docs/sub").origin == "RW_AND_RO"
    assert stat.S_IMODE(get_attributes(c, "/docs/sub/deep.txt").st_mode) == 0o640


def test_set_attributes_read_write(config: Config) -> None:
    c = config
    (c.rw_branch / "mine").write_text("hello world")
    attrs = set_attributes(c, "/mine", AttributeChanges(mode=0o640, size=5, atime_ns=10**18))
    assert stat.S_IMODE(attrs.st_mode) == 0o640
    assert attrs.st_size == 5
    assert attrs.st_atime_ns == 10**18
    assert (c.rw_branch / "mine").read_text() == "hello"
    assert not find_override(c, "/mine")


def test_set_attributes_read_only_size_rejected(seeded_ro: Config) -> None:
    with pytest.raises(InvalidArgumentError):
        set_attributes(seeded_ro, "/readme", AttributeChanges(size=0))
