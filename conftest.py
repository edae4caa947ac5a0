import logging
import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner

from stratum.access import Caller
from stratum.config import Config
from stratum.core import UnionCore

logger = logging.getLogger(__name__)


@pytest.fixture(autouse=True)
def debug_logging() -> None:
    logging.getLogger().setLevel(logging.DEBUG)


@pytest.fixture()
def isolated_dir() -> Iterator[Path]:
    with CliRunner().isolated_filesystem():
        yield Path.cwd().resolve()


@pytest.fixture()
def config(isolated_dir: Path) -> Config:
    rw_branch = isolated_dir / "rw"
    rw_branch.mkdir()
    ro_branch = isolated_dir / "ro"
    ro_branch.mkdir()
    mount_dir = isolated_dir / "mount"
    mount_dir.mkdir()
    return Config(
        rw_branch=rw_branch,
        ro_branch=ro_branch,
        mount_dir=mount_dir,
        max_proc=2,
        allow_other=False,
    )


@pytest.fixture()
def seeded_ro(config: Config) -> Config:
    """
    Populate the read-only branch with:

        /readme           "hello"
        /docs/guide.txt   "guide"
        /docs/api.txt     "api"
        /docs/sub/deep.txt "deep"
        /link -> readme
    """
    ro = config.ro_branch
    (ro / "readme").write_text("hello")
    (ro / "docs" / "sub").mkdir(parents=True)
    (ro / "docs" / "guide.txt").write_text("guide")
    (ro / "docs" / "api.txt").write_text("api")
    (ro / "docs" / "sub" / "deep.txt").write_text("deep")
    os.symlink("readme", ro / "link")
    return config


@pytest.fixture()
def caller() -> Caller:
    return Caller.current()


@pytest.fixture()
def core(config: Config) -> UnionCore:
    return UnionCore(config)
