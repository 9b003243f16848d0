"""
Identifier and path checks shared by anything that turns a caller-supplied
id into a directory it later writes to or deletes.
"""
import os
import re

from execution_engine.core.exceptions import InvalidPathError

SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def is_safe_segment(value: str) -> bool:
    """True for a single path component that cannot be '', '.', '..' or contain a separator."""
    return bool(value) and SAFE_SEGMENT.match(value) is not None


def require_segment(value: str, reason: str = "Identifier is not a valid path segment") -> str:
    if not is_safe_segment(value):
        raise InvalidPathError(value or "", reason)
    return value


def child_directory(root: str, name: str, reason: str = "Identifier is not a valid path segment") -> str:
    """
    Join a single-segment name onto root.

    Args:
        root: Parent directory
        name: Caller-supplied identifier

    Returns:
        Absolute path of the child directory

    Raises:
        InvalidPathError: If name is not a safe segment or the result,
            after resolving symlinks, is not strictly inside root
    """
    require_segment(name, reason)
    real_root = os.path.realpath(root)
    path = os.path.realpath(os.path.join(real_root, name))
    if not path.startswith(real_root + os.sep):
        raise InvalidPathError(name, reason)
    return path
