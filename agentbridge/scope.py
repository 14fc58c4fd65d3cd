"""Project-root discovery and lexical path containment."""

from __future__ import annotations

import os

__all__ = ["find_project_root", "is_path_descendant_or_equal"]


def _has_git_marker(directory: str) -> bool:
    """A ``.git`` directory (clone) or file (linked worktree); symlinks not followed."""
    try:
        os.lstat(os.path.join(directory, ".git"))
    except OSError:
        return False
    return True


def find_project_root(cwd: str | os.PathLike[str], home: str | os.PathLike[str] = "") -> str:
    """Return the nearest ancestor of ``cwd`` holding ``.git``, else ``cwd`` itself.

    ``home`` never counts as a project root, even with its own ``.git``; an
    empty ``home`` disables that exclusion. Resolution is lexical: symlinks are
    not resolved.
    """
    start = os.path.normpath(os.path.abspath(os.fspath(cwd)))
    home_text = os.fspath(home)
    clean_home = os.path.normpath(home_text) if home_text else ""

    directory = start
    while True:
        if directory != clean_home and _has_git_marker(directory):
            return directory
        parent = os.path.dirname(directory)
        if parent == directory:
            break
        directory = parent
    return start


def is_path_descendant_or_equal(child: str, parent: str) -> bool:
    """Report whether ``child`` equals ``parent`` or lies beneath it."""
    child = os.path.normpath(child)
    parent = os.path.normpath(parent)
    if child == parent:
        return True
    return child.startswith(parent + os.sep)