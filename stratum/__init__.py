from stratum.access import (
    Caller,
    can_access,
    can_change_attributes,
    can_create,
    can_remove,
)
from stratum.attributes import get_attributes, set_attributes
from stratum.check import Inconsistency, check_union, repair_union
from stratum.common import (
    VERSION,
    AlreadyExistsError,
    CrossBranchError,
    InconsistentError,
    InvalidArgumentError,
    IsADirectoryUnionError,
    NameTooLongError,
    NotADirectoryUnionError,
    NotEmptyError,
    NotFoundError,
    PermissionDeniedError,
    ResourceExhaustedError,
    StratumError,
    StratumExpectedError,
    UnionError,
    initialize_logging,
)
from stratum.config import Branch, Config, Origin
from stratum.copyup import copy_up
from stratum.core import UnionCore
from stratum.listing import is_empty_dir, list_directory, read_directory
from stratum.overrides import AttributeChanges, Attributes
from stratum.resolver import ResolvedLocation, find_path, resolve
from stratum.whiteouts import (
    create_whiteout,
    find_whiteout,
    hide_directory_contents,
    is_masked,
    unlink_rw_file,
    unlink_whiteout,
)

__all__ = [
    # Plumbing
    "initialize_logging",
    "VERSION",
    # Errors
    "StratumError",
    "StratumExpectedError",
    "UnionError",
    "AlreadyExistsError",
    "CrossBranchError",
    "InconsistentError",
    "InvalidArgumentError",
    "IsADirectoryUnionError",
    "NameTooLongError",
    "NotADirectoryUnionError",
    "NotEmptyError",
    "NotFoundError",
    "PermissionDeniedError",
    "ResourceExhaustedError",
    # Configuration
    "Branch",
    "Config",
    # Resolution
    "Origin",
    "ResolvedLocation",
    "resolve",
    "find_path",
    # Whiteouts
    "create_whiteout",
    "find_whiteout",
    "hide_directory_contents",
    "is_masked",
    "unlink_rw_file",
    "unlink_whiteout",
    # Attributes
    "Attributes",
    "AttributeChanges",
    "get_attributes",
    "set_attributes",
    # Copy-up
    "copy_up",
    # Listings
    "is_empty_dir",
    "list_directory",
    "read_directory",
    # Access control
    "Caller",
    "can_access",
    "can_change_attributes",
    "can_create",
    "can_remove",
    # Operations
    "UnionCore",
    # Consistency
    "Inconsistency",
    "check_union",
    "repair_union",
]

initialize_logging(__name__)
