from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from . import db as dbmod
from .errors import ScanError
from .indexing import (
    STATUS_FAILED,
    STATUS_INDEXED,
    STATUS_REMOVED,
    Indexer,
    bounded_gather,
    remove_orphans,
)
from .scanning import ChangeScanner


@dataclass
class RebuildReport:
    scanned: int = 0
    indexed: int = 0
    removed: int = 0
    failed: List[Dict[str, str]] = field(default_factory=list)
    skipped: int = 0
    orphans_removed: int = 0
    duration_ms: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RagPipeline:
    """Scan, then reconcile every pending ledger entry.

    Only one rebuild runs at a time. A rebuild after which nothing changed
    on disk touches neither the vector store nor the ledger.
    """

    def __init__(
        self,
        *,
        db_path: str,
        scanner: ChangeScanner,
        indexer: Indexer,
        concurrency: int = 1,
    ) -> None:
        self.db_path = db_path
        self.scanner = scanner
        self.indexer = indexer
        self.concurrency = max(1, int(concurrency))
        self._rebuild_lock = asyncio.Lock()

    async def rebuild(self, *, force: bool = False) -> RebuildReport:
        async with self._rebuild_lock:
            return await self._rebuild(force=force)

    async def _rebuild(self, *, force: bool) -> RebuildReport:
        start = time.perf_counter()
        report = RebuildReport()
        await dbmod.init_db(self.db_path)
        try:
            # Walk first: a failed walk must leave the ledger untouched.
            snapshot = await self.scanner.walk()
        except ScanError:
            logging.error("Scan failed; rebuild aborted.", exc_info=True)
            raise
        if force:
            invalidated = await dbmod.invalidate_all(self.db_path)
            await dbmod.reset_indexed(self.db_path)
            logging.info("Forced rebuild: invalidated %s ledger entries.", invalidated)
        scan = await self.scanner.scan(snapshot)
        report.scanned = scan.files_seen

        pending = await dbmod.list_pending(self.db_path)
        async for result in bounded_gather(pending, self.indexer.reconcile, self.concurrency):
            if result.status == STATUS_INDEXED:
                report.indexed += 1
            elif result.status == STATUS_REMOVED:
                report.removed += 1
            elif result.status == STATUS_FAILED:
                project_id, app_id, path = result.identity
                report.failed.append(
                    {"project_id": project_id, "app_id": app_id, "path": path, "error": result.error or ""}
                )
            else:
                report.skipped += 1

        # Chunks left behind by an interrupted or half-failed reconciliation.
        try:
            report.orphans_removed = await remove_orphans(self.db_path, self.indexer.vector_store)
        except Exception:
            logging.warning("Orphan cleanup failed; it is retried on the next rebuild.", exc_info=True)

        report.duration_ms = int((time.perf_counter() - start) * 1000)
        logging.info(
            "Rebuild complete: %s indexed, %s removed, %s failed, %s skipped",
            report.indexed,
            report.removed,
            len(report.failed),
            report.skipped,
            extra={
                "operation": "rebuild",
                "scanned": report.scanned,
                "duration_ms": report.duration_ms,
            },
        )
        return report

    async def status(self) -> Dict[str, Any]:
        await dbmod.init_db(self.db_path)
        stats = await dbmod.ledger_stats(self.db_path)
        stats["vector_documents"] = await self.indexer.vector_store.count()
        stats["rebuild_running"] = self._rebuild_lock.locked()
        return stats
