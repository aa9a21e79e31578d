from __future__ import annotations

from typing import Dict, List, Mapping

from ..domain.models import FileChange


def diff_file_states(previous: Mapping[str, str], current: Mapping[str, str]) -> List[FileChange]:
    """Classify every path that differs between two snapshots.

    Paths only in ``current`` are ``new``; paths only in ``previous`` are
    ``deleted``; paths in both with different content are ``updated``.
    Unchanged paths are omitted. Presence is decided by key membership, so an
    empty file is still a file.
    """
    changes: List[FileChange] = []
    seen = set()
    for path in list(previous.keys()) + list(current.keys()):
        if path in seen:
            continue
        seen.add(path)
        in_prev = path in previous
        in_curr = path in current
        if in_curr and not in_prev:
            changes.append(FileChange(path=path, status="new"))
        elif in_prev and not in_curr:
            changes.append(FileChange(path=path, status="deleted", previous_content=previous[path]))
        elif previous[path] != current[path]:
            changes.append(FileChange(path=path, status="updated", previous_content=previous[path]))
    return changes


def merge_file_states(previous: Mapping[str, str], generated: Mapping[str, str]) -> Dict[str, str]:
    """Overlay generated files on the previous snapshot (generated wins)."""
    merged = dict(previous)
    merged.update(generated)
    return merged


def change_index(changes: List[FileChange]) -> Dict[str, FileChange]:
    return {change.path: change for change in changes}
