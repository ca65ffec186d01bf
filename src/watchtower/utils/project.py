"""
Repository root discovery.

The dashboard can be started from any subdirectory; config files and the
log name are keyed on the repository root.
"""

from pathlib import Path

REPO_ROOT_MARKERS = [
    ".git",  # Directory in a normal clone, file in a worktree
]


def find_repo_root(start: Path | None = None) -> Path | None:
    """
    Find the repository root by searching upward for ``.git``.

    Args:
        start: Directory to start searching from. Defaults to current working directory.

    Returns:
        Path to the repository root, or None if not inside a repository.

    Example:
        >>> find_repo_root(Path("/project/src/module"))
        PosixPath('/project')
    """
    if start is None:
        start = Path.cwd()

    current = start.resolve()
    while True:
        for marker in REPO_ROOT_MARKERS:
            if (current / marker).exists():
                return current
        if current == current.parent:
            return None
        current = current.parent
