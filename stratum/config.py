"""
The config module provides the config dataclass and parsing logic. The config is also the branch
registry: it holds the read-write and read-only branch roots, and it is frozen, so the branch set is
fixed for the lifetime of the union.

We take special care to optimize the configuration experience: Stratum provides detailed errors when
an invalid configuration is detected, and emits warnings when unrecognized keys are found.
"""

from __future__ import annotations

import logging
import multiprocessing
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import appdirs
import tomllib

from stratum.common import StratumExpectedError

XDG_CONFIG_STRATUM = Path(appdirs.user_config_dir("stratum"))
CONFIG_PATH = XDG_CONFIG_STRATUM / "config.toml"

logger = logging.getLogger(__name__)

BranchRole = Literal["RW", "RO"]
# Which branch holds the authoritative entry for a logical path. RW_AND_RO only applies to
# directories present on both branches, and means that listings must be merged.
Origin = Literal["RW", "RO", "RW_AND_RO", "NONE"]


class ConfigNotFoundError(StratumExpectedError):
    pass


class ConfigDecodeError(StratumExpectedError):
    pass


class MissingConfigKeyError(StratumExpectedError):
    pass


class InvalidConfigValueError(StratumExpectedError, ValueError):
    pass


class InvalidBranchConfigError(InvalidConfigValueError):
    pass


@dataclass(frozen=True, slots=True)
class Branch:
    role: BranchRole
    root: Path


@dataclass(frozen=True)
class Config:
    rw_branch: Path
    ro_branch: Path
    mount_dir: Path
    # Maximum worker threads for the FUSE request loop. Defaults to nproc/2.
    max_proc: int
    # Whether other users may access the mount. Requires `user_allow_other` in /etc/fuse.conf.
    allow_other: bool

    def branch(self, role: BranchRole) -> Branch:
        return Branch(role, self.rw_branch if role == "RW" else self.ro_branch)

    @classmethod
    def parse(cls, config_path_override: Path | None = None) -> Config:
        # As we parse, delete consumed values from the data dictionary. If any are left over at the
        # end of the config, warn that unknown config keys were found.
        cfgpath = config_path_override or CONFIG_PATH
        try:
            with cfgpath.open("r") as fp:
                data = tomllib.loads(fp.read())
        except FileNotFoundError as e:
            raise ConfigNotFoundError(f"Configuration file not found ({cfgpath})") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigDecodeError(f"Failed to decode configuration file: invalid TOML: {e}") from e

        paths: dict[str, Path] = {}
        for key in ["rw_branch", "ro_branch", "mount_dir"]:
            try:
                paths[key] = Path(data[key]).expanduser()
                del data[key]
            except KeyError as e:
                raise MissingConfigKeyError(f"Missing key {key} in configuration file ({cfgpath})") from e
            except (ValueError, TypeError) as e:
                raise InvalidConfigValueError(
                    f"Invalid value for {key} in configuration file ({cfgpath}): must be a path"
                ) from e

        try:
            max_proc = int(data["max_proc"])
            del data["max_proc"]
            if max_proc <= 0:
                raise ValueError(f"must be a positive integer: got {max_proc}")
        except KeyError:
            max_proc = max(1, multiprocessing.cpu_count() // 2)
        except (ValueError, TypeError) as e:
            raise InvalidConfigValueError(
                f"Invalid value for max_proc in configuration file ({cfgpath}): must be a positive integer"
            ) from e

        try:
            allow_other = data["allow_other"]
            del data["allow_other"]
            if not isinstance(allow_other, bool):
                raise ValueError(f"Must be a bool: got {type(allow_other)}")
        except KeyError:
            allow_other = False
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for allow_other in configuration file ({cfgpath}): {e}"
            ) from e

        if data:
            unrecognized_keys = ", ".join(sorted(data.keys()))
            logger.warning(f"Unrecognized options found in configuration file: {unrecognized_keys}")

        rw_branch, ro_branch = validate_branches(paths["rw_branch"], paths["ro_branch"], paths["mount_dir"])
        return Config(
            rw_branch=rw_branch,
            ro_branch=ro_branch,
            mount_dir=paths["mount_dir"],
            max_proc=max_proc,
            allow_other=allow_other,
        )


def validate_branches(rw_branch: Path, ro_branch: Path, mount_dir: Path | None = None) -> tuple[Path, Path]:
    """
    Check that the two branches form a usable union and return their absolute, resolved roots. Both
    branches must be existing directories, they must be distinct and not nested in one another, and
    the read-write branch must be writable. The read-only branch is allowed to be immutable.
    """
    roots: dict[BranchRole, Path] = {}
    for role, root in [("RW", rw_branch), ("RO", ro_branch)]:
        resolved = root.expanduser().resolve()
        if not resolved.exists():
            raise InvalidBranchConfigError(f"The {role} branch {root} does not exist")
        if not resolved.is_dir():
            raise InvalidBranchConfigError(f"The {role} branch {root} is not a directory")
        roots[role] = resolved

    rw, ro = roots["RW"], roots["RO"]
    if rw == ro:
        raise InvalidBranchConfigError(f"The RW and RO branches must be distinct: both are {rw}")
    if rw.is_relative_to(ro) or ro.is_relative_to(rw):
        raise InvalidBranchConfigError(f"The RW branch {rw} and RO branch {ro} must not be nested in each other")
    if mount_dir is not None:
        mnt = mount_dir.expanduser().resolve()
        for role, root in roots.items():
            if mnt == root or mnt.is_relative_to(root) or root.is_relative_to(mnt):
                raise InvalidBranchConfigError(
                    f"The mount directory {mount_dir} must not overlap with the {role} branch {root}"
                )
    if not os.access(rw, os.W_OK | os.X_OK):
        raise InvalidBranchConfigError(f"The RW branch {rw} is not writable")
    return rw, ro
