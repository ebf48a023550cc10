from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from . import db as dbmod
from .config import ProjectApp, ProjectContext
from .errors import PathSecurityError, ScanError
from .security import PathContext


def matches_any(path: str, patterns: Sequence[str]) -> bool:
    """fnmatch ``path`` or its basename against glob patterns.

    Leading ``**/`` is also tried stripped, so ``**/*.log`` matches a
    file at the top level.
    """
    basename = os.path.basename(path)
    for pat in patterns:
        if fnmatch.fnmatch(path, pat) or fnmatch.fnmatch(basename, pat):
            return True
        stripped = pat
        while stripped.startswith("**/"):
            stripped = stripped[3:]
        if stripped != pat and (fnmatch.fnmatch(path, stripped) or fnmatch.fnmatch(basename, stripped)):
            return True
    return False


AppKey = Tuple[str, str]


@dataclass(frozen=True)
class ScanResult:
    files_seen: int
    marked_changed: int
    marked_deleted: int


class ChangeScanner:
    """Compares the configured project trees with the ledger.

    Only ``last_seen_modified_at`` is written: new and modified files get
    their current mtime, vanished files (and files of apps no longer
    configured) get ``None``.
    """

    def __init__(
        self,
        db_path: str,
        project_context: ProjectContext,
        path_context: PathContext,
        ignore_patterns: Sequence[str],
    ) -> None:
        self.db_path = db_path
        self.project_context = project_context
        self.path_context = path_context
        self.ignore_patterns = list(ignore_patterns)

    def _iter_app_files(self, app: ProjectApp) -> Iterator[Tuple[str, int]]:
        app_root = Path(app.path)
        if not app_root.is_dir():
            raise ScanError(f"App root for '{app.id}' is not a directory: {app_root}")
        yielded: Set[str] = set()
        for watch in app.watch:
            watch_root = Path(os.path.normpath(os.path.join(app_root, watch.path)))
            if not watch_root.is_dir():
                logging.warning("Watch directory %s of app %s does not exist; skipping.", watch_root, app.id)
                continue
            for p in self.path_context.iter_files(watch_root):
                rel = p.relative_to(app_root).as_posix()
                if rel in yielded:
                    continue
                if matches_any(rel, self.ignore_patterns):
                    continue
                if not matches_any(p.relative_to(watch_root).as_posix(), watch.patterns):
                    continue
                try:
                    mtime = self.path_context.stat(p).st_mtime_ns
                except FileNotFoundError:
                    # Gone between listing and stat; the next scan sees it as deleted.
                    continue
                yielded.add(rel)
                yield rel, int(mtime)

    def _walk(self) -> Dict[AppKey, Dict[str, int]]:
        snapshot: Dict[AppKey, Dict[str, int]] = {}
        try:
            for project in self.project_context.projects:
                for app in project.apps:
                    snapshot[(project.id, app.id)] = dict(self._iter_app_files(app))
        except ScanError:
            raise
        except (OSError, PathSecurityError) as exc:
            raise ScanError(f"Scanning project roots failed: {exc}") from exc
        return snapshot

    async def walk(self) -> Dict[AppKey, Dict[str, int]]:
        """Relative path -> mtime of every watched file, per (project_id, app_id).

        Reads the disk only; raises ScanError before anything is written.
        """
        return await asyncio.to_thread(self._walk)

    async def scan(self, snapshot: Optional[Dict[AppKey, Dict[str, int]]] = None) -> ScanResult:
        start = time.perf_counter()
        if snapshot is None:
            snapshot = await self.walk()
        rows: List[Tuple[str, str, str, Optional[int]]] = []
        files_seen = 0
        changed = 0
        deleted = 0
        for (project_id, app_id), on_disk in snapshot.items():
            files_seen += len(on_disk)
            known = {
                e.path: e
                for e in await dbmod.list_entries(self.db_path, project_id=project_id, app_id=app_id)
            }
            for rel, mtime in on_disk.items():
                entry = known.get(rel)
                if entry is None or entry.last_seen_modified_at != mtime:
                    rows.append((project_id, app_id, rel, mtime))
                    changed += 1
            for rel, entry in known.items():
                if rel not in on_disk and entry.last_seen_modified_at is not None:
                    rows.append((project_id, app_id, rel, None))
                    deleted += 1

        for entry in await dbmod.list_entries(self.db_path):
            if (entry.project_id, entry.app_id) in snapshot or entry.last_seen_modified_at is None:
                continue
            rows.append((entry.project_id, entry.app_id, entry.path, None))
            deleted += 1

        await dbmod.mark_pending_many(self.db_path, rows)

        logging.info(
            "Scan complete: %s files seen, %s new or changed, %s deleted",
            files_seen,
            changed,
            deleted,
            extra={
                "operation": "scan",
                "files_seen": files_seen,
                "duration_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        return ScanResult(files_seen=files_seen, marked_changed=changed, marked_deleted=deleted)
