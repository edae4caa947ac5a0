"""
The common module is our ugly grab bag of common toys: the version, the error taxonomy, and logging
setup. Everything in here is depended on by everything else, so it must not import any other
stratum module.
"""

import errno
import logging
import logging.handlers
import os
import sys
from pathlib import Path

import appdirs

with (Path(__file__).parent / ".version").open("r") as fp:
    VERSION = fp.read().strip()


class StratumError(Exception):
    pass


class StratumExpectedError(StratumError):
    """These errors are printed without traceback."""

    pass


class UnionError(StratumError, OSError):
    """
    Base class of the union's error taxonomy. Every union error is also an OSError carrying the
    conventional errno for its failure, so that the FUSE adapter can forward it to the kernel and
    standard tooling behaves correctly against the union.
    """

    code = errno.EIO

    def __init__(self, message: str, path: str | None = None) -> None:
        if path is None:
            super().__init__(self.code, message)
        else:
            super().__init__(self.code, message, path)


class NotFoundError(UnionError):
    code = errno.ENOENT


class AlreadyExistsError(UnionError):
    code = errno.EEXIST


class PermissionDeniedError(UnionError):
    code = errno.EACCES


class NameTooLongError(UnionError):
    code = errno.ENAMETOOLONG


class ResourceExhaustedError(UnionError):
    code = errno.ENOSPC


class InvalidArgumentError(UnionError):
    code = errno.EINVAL


class InconsistentError(UnionError):
    """The whiteout/override/copy-up state on disk cannot be interpreted."""

    code = errno.EIO


class NotEmptyError(UnionError):
    code = errno.ENOTEMPTY


class NotADirectoryUnionError(UnionError):
    code = errno.ENOTDIR


class IsADirectoryUnionError(UnionError):
    code = errno.EISDIR


class CrossBranchError(UnionError):
    """Raised for renames that would require moving read-only content; tools fall back to copying."""

    code = errno.EXDEV


__logging_initialized: set[str | None] = set()


def initialize_logging(logger_name: str | None = None) -> None:
    if logger_name in __logging_initialized:
        return
    __logging_initialized.add(logger_name)

    logger = logging.getLogger(logger_name)

    # Useful for debugging problems with the virtual FS, since pytest doesn't capture that debug logging
    # output.
    log_despite_testing = os.environ.get("LOG_TEST", False)

    # Add a logging handler for stdout unless we are testing. Pytest
    # captures logging output on its own, so by default, we do not attach our own.
    if "pytest" not in sys.modules or log_despite_testing:  # pragma: no cover
        # appdirs by default has Unix log to $XDG_CACHE_HOME, but I'd rather write logs to $XDG_STATE_HOME.
        log_home = Path(appdirs.user_state_dir("stratum"))
        if appdirs.system == "darwin":
            log_home = Path(appdirs.user_log_dir("stratum"))
        log_home.mkdir(parents=True, exist_ok=True)
        log_file = log_home / "stratum.log"

        simple_formatter = logging.Formatter(
            "[%(asctime)s] %(levelname)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        verbose_formatter = logging.Formatter(
            "[ts=%(asctime)s.%(msecs)03d] [pid=%(process)d] [src=%(name)s:%(lineno)s] %(levelname)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(simple_formatter if not log_despite_testing else verbose_formatter)
        logger.addHandler(stream_handler)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=20 * 1024 * 1024,
            backupCount=10,
        )
        file_handler.setFormatter(verbose_formatter)
        logger.addHandler(file_handler)
