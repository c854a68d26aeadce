"""Fast recursive listing of the regular files under a directory."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor

log = logging.getLogger(__name__)


def _regular_files(directory: str, basename: bool) -> list[str]:
    """Collect every regular file below a directory, without following links."""
    found: list[str] = []
    pending = [directory]
    while pending:
        current = pending.pop()
        try:
            with os.scandir(current) as entries:
                for entry in entries:
                    if entry.is_dir(follow_symlinks=False):
                        pending.append(entry.path)
                    elif entry.is_file(follow_symlinks=False):
                        found.append(entry.name if basename else entry.path)
        except OSError:
            log.exception("error while walking %s", current)
    return found


def all_files(start_dir: str | os.PathLike[str], basename: bool) -> list[str]:
    """List every file in every subdirectory of a directory.

    With ``basename`` true only file names are returned, otherwise paths
    starting at ``start_dir``. The order of the result is unspecified.
    Raises OSError if ``start_dir`` itself cannot be read.
    """
    root = os.fspath(start_dir)
    with os.scandir(root) as entries:
        items = list(entries)

    paths: list[str] = []
    subdirs: list[str] = []
    for item in items:
        if item.is_dir(follow_symlinks=False):
            subdirs.append(os.path.join(root, item.name))
        elif basename:
            paths.append(item.name)
        else:
            paths.append(os.path.join(root, item.name))

    if subdirs:
        workers = max(1, (os.cpu_count() or 1) - 1)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            for found in pool.map(lambda d: _regular_files(d, basename), subdirs):
                paths.extend(found)
    return paths