"""Cross-session file access tracking for conflict detection.

Every active session reports the files its tools touch.  Two sessions
touching the same path, where at least one of them writes or edits, is a
conflict.  Conflicts are advisory: they are reported once per session pair
and path and never stop either session.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)

READ = "read"


@dataclass(slots=True, frozen=True)
class FileConflict:
    path: str
    session_ids: tuple[str, str]
    access_types: tuple[str, str]


def normalize_path(path: str) -> str:
    """Canonical key for a path: forward slashes, lower case, no ``./``."""
    norm = path.replace("\\", "/").strip()
    while norm.startswith("./"):
        norm = norm[2:]
    if len(norm) > 1:
        norm = norm.rstrip("/")
    return norm.lower()


class FileAccessTracker:
    """Thread-safe map of session id -> accessed paths -> access kinds."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._accesses: dict[str, dict[str, set[str]]] = {}
        self._reported: set[tuple[str, frozenset[str]]] = set()

    def record(self, session_id: str, path: str, access: str) -> list[FileConflict]:
        """Record an access and return the conflicts it newly creates."""
        key = normalize_path(path)
        if not key:
            return []
        conflicts: list[FileConflict] = []
        with self._lock:
            for other_id, paths in self._accesses.items():
                if other_id == session_id:
                    continue
                other_kinds = paths.get(key)
                if not other_kinds:
                    continue
                if access == READ and other_kinds == {READ}:
                    continue
                pair = (key, frozenset((session_id, other_id)))
                if pair in self._reported:
                    continue
                self._reported.add(pair)
                other_access = next((k for k in sorted(other_kinds) if k != READ), READ)
                conflicts.append(
                    FileConflict(
                        path=key,
                        session_ids=(other_id, session_id),
                        access_types=(other_access, access),
                    )
                )
            self._accesses.setdefault(session_id, {}).setdefault(key, set()).add(access)
        for conflict in conflicts:
            logger.info(
                "file conflict on %s between %s and %s",
                conflict.path,
                conflict.session_ids[0],
                conflict.session_ids[1],
            )
        return conflicts

    def clear_session(self, session_id: str) -> None:
        with self._lock:
            self._accesses.pop(session_id, None)
            self._reported = {p for p in self._reported if session_id not in p[1]}

    def paths_for(self, session_id: str) -> dict[str, set[str]]:
        with self._lock:
            return {path: set(kinds) for path, kinds in self._accesses.get(session_id, {}).items()}
