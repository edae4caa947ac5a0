import pytest

from stratum.common import InvalidArgumentError, NameTooLongError
from stratum.config import Config
from stratum.paths import (
    ancestors,
    is_reserved_name,
    is_reserved_path,
    normalize,
    override_path,
    ro_path,
    rw_path,
    split,
    temporary_path,
    whiteout_path,
)


def test_normalize() -> None:
    assert normalize("/") == "/"
    assert normalize("/a/b/") == "/a/b"
    assert normalize("/a/./b/../c") == "/a/c"
    assert normalize("//a//b") == "/a/b"
    assert normalize("/..") == "/"
    with pytest.raises(InvalidArgumentError):
        normalize("a/b")


def test_split_and_ancestors() -> None:
    assert split("/a/b/c") == ("/a/b", "c")
    assert split("/a") == ("/", "a")
    with pytest.raises(InvalidArgumentError):
        split("/")
    assert ancestors("/a/b/c") == ["/a", "/a/b"]
    assert ancestors("/a") == []
    assert ancestors("/") == []


def test_reserved_names() -> None:
    assert is_reserved_name(".wh.readme")
    assert is_reserved_name(".me.readme")
    assert is_reserved_name(".cu.0123")
    assert not is_reserved_name(".readme")
    assert not is_reserved_name("wh.readme")
    assert is_reserved_path("/docs/.wh.x/y")
    assert not is_reserved_path("/docs/x/y")


def test_marker_paths(config: Config) -> None:
    assert rw_path(config, "/") == config.rw_branch
    assert rw_path(config, "/docs/readme") == config.rw_branch / "docs" / "readme"
    assert ro_path(config, "/docs/readme") == config.branch("RO").root / "docs" / "readme"
    assert ro_path(config, "/") == config.ro_branch
    assert whiteout_path(config, "/docs/readme") == config.rw_branch / "docs" / ".wh.readme"
    assert override_path(config, "/readme") == config.rw_branch / ".me.readme"
    tmp = temporary_path(config.rw_branch)
    assert tmp.parent == config.rw_branch
    assert tmp.name.startswith(".cu.")
    assert tmp != temporary_path(config.rw_branch)


def test_name_too_long(config: Config) -> None:
    with pytest.raises(NameTooLongError):
        rw_path(config, "/" + "a" * 256)
    # The whiteout prefix pushes a name that fits on its own over the limit.
    rw_path(config, "/" + "a" * 252)
    with pytest.raises(NameTooLongError):
        whiteout_path(config, "/" + "a" * 252)
    with pytest.raises(NameTooLongError):
        rw_path(config, "/a" * 2100)
