from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from . import db as dbmod
from .chunking import Chunk, chunks_from_pieces, merge_metadata, split_text
from .config import ProjectContext
from .db import LedgerEntry
from .enrichment import MetadataEnricher
from .locks import get_entry_lock, remove_entry_lock
from .security import PathContext
from .vectorstore import Document, VectorStore


CONTAINS_SOURCE_CODE = "source code"

# A NUL byte in the head of a file marks it as binary.
BINARY_SNIFF_BYTES = 8192

STATUS_INDEXED = "indexed"
STATUS_REMOVED = "removed"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class ReconcileResult:
    identity: Tuple[str, str, str]
    status: str
    chunks: int = 0
    error: Optional[str] = None


async def bounded_gather(items: Iterable[Any], worker, concurrency: int) -> AsyncIterator[Any]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` in flight, yielding results."""
    queue_maxsize = max(1, int(concurrency) * 2)
    output: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_maxsize)
    sentinel = object()
    sem = asyncio.Semaphore(max(1, int(concurrency)))

    async def _run(item: Any) -> None:
        async with sem:
            res = await worker(item)
            await output.put(res)

    async def _producer() -> None:
        try:
            async with asyncio.TaskGroup() as tg:
                for item in items:
                    tg.create_task(_run(item))
        except BaseException as exc:
            await output.put(exc)
        finally:
            await output.put(sentinel)

    producer = asyncio.create_task(_producer())
    try:
        while True:
            res = await output.get()
            if isinstance(res, BaseException):
                raise res
            if res is sentinel:
                break
            yield res
    finally:
        if not producer.done():
            producer.cancel()
        await producer


def base_metadata(entry: LedgerEntry) -> Dict[str, str]:
    return {
        "filepath": entry.path,
        "project_id": entry.project_id,
        "app_id": entry.app_id,
        "contains": CONTAINS_SOURCE_CODE,
    }


@dataclass
class Indexer:
    """Brings the vector store and the ledger into agreement for one file at a time.

    A changed file is fully re-read, re-enriched and re-embedded under fresh
    chunk ids. New chunks are written and the ledger committed before the
    previous chunks are deleted, so the old version stays retrievable until
    the new one is in place.
    """

    db_path: str
    project_context: ProjectContext
    path_context: PathContext
    vector_store: VectorStore
    enricher: MetadataEnricher
    chunk_size_tokens: int = 800
    min_chunk_chars: int = 350
    max_file_size_mb: int = 5

    async def reconcile(self, entry: LedgerEntry) -> ReconcileResult:
        """Reconcile one pending entry; failures are logged and reported, never raised."""
        start = time.perf_counter()
        lock = await get_entry_lock(entry.identity)
        async with lock:
            try:
                result = await self._reconcile_locked(entry)
            except Exception as exc:
                logging.warning(
                    "Failed to reconcile %s/%s/%s; it stays pending.",
                    entry.project_id,
                    entry.app_id,
                    entry.path,
                    exc_info=True,
                )
                result = ReconcileResult(
                    identity=entry.identity,
                    status=STATUS_FAILED,
                    error=f"{type(exc).__name__}: {exc}",
                )
        if result.status == STATUS_REMOVED:
            await remove_entry_lock(entry.identity)
        logging.debug(
            "Reconciled %s: %s",
            entry.path,
            result.status,
            extra={
                "operation": "reconcile",
                "status": result.status,
                "chunks": result.chunks,
                "duration_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        return result

    async def _reconcile_locked(self, entry: LedgerEntry) -> ReconcileResult:
        # The row may have moved on since the pending list was read.
        current = await dbmod.get_entry_by_id(self.db_path, entry.entry_id)
        if current is None or not current.is_pending:
            return ReconcileResult(identity=entry.identity, status=STATUS_SKIPPED)
        if current.is_deleted:
            return await self._remove(current)
        return await self._index(current)

    async def _remove(self, entry: LedgerEntry) -> ReconcileResult:
        logging.info("Removing deleted file from index: %s/%s", entry.app_id, entry.path)
        await self.vector_store.delete(list(entry.chunk_refs))
        await dbmod.remove_entry(self.db_path, entry)
        return ReconcileResult(identity=entry.identity, status=STATUS_REMOVED)

    def _read_source(self, entry: LedgerEntry) -> Optional[str]:
        path = self.project_context.resolve_entry_path(entry.project_id, entry.app_id, entry.path)
        try:
            size = self.path_context.stat(path).st_size
        except FileNotFoundError:
            return None
        max_bytes = int(self.max_file_size_mb) * 1024 * 1024
        if size > max_bytes:
            raise ValueError(f"File too large: {path} ({size} bytes)")
        try:
            with self.path_context.open_file(path, "rb") as f:
                raw = f.read()
        except FileNotFoundError:
            return None
        if b"\x00" in raw[:BINARY_SNIFF_BYTES]:
            logging.info("Skipping binary file: %s", path)
            return ""
        return raw.decode("utf-8", errors="ignore")

    def _split(self, text: str) -> List[Tuple[str, int]]:
        return split_text(text, max_tokens=self.chunk_size_tokens, min_chunk_chars=self.min_chunk_chars)

    async def _index(self, entry: LedgerEntry) -> ReconcileResult:
        text = await asyncio.to_thread(self._read_source, entry)
        if text is None:
            # Vanished after the scan: record the deletion and reconcile it now.
            await dbmod.mark_pending(
                self.db_path,
                project_id=entry.project_id,
                app_id=entry.app_id,
                path=entry.path,
                observed_modified_at=None,
            )
            gone = await dbmod.get_entry_by_id(self.db_path, entry.entry_id)
            if gone is None:
                return ReconcileResult(identity=entry.identity, status=STATUS_SKIPPED)
            return await self._remove(gone)

        logging.info("Indexing file: %s/%s", entry.app_id, entry.path)
        chunks: List[Chunk] = []
        pieces = await asyncio.to_thread(self._split, text)
        if pieces:
            context = self.project_context.project_and_app_context(entry.app_id) or ""
            extra = await self.enricher.get_metadata_for_source_code(context, entry.path, text)
            chunks = chunks_from_pieces(pieces, merge_metadata(base_metadata(entry), extra))

        documents = [
            Document(document_id=str(uuid.uuid4()), content=c.content, metadata=dict(c.metadata))
            for c in chunks
        ]
        new_refs = [d.document_id for d in documents]
        old_refs = list(entry.chunk_refs)

        await self.vector_store.add(documents)
        try:
            await dbmod.reconciled(
                self.db_path,
                entry,
                new_chunk_refs=new_refs,
                new_indexed_at=entry.last_seen_modified_at,
            )
        except Exception:
            # Nothing references the new chunks; take them back out.
            try:
                await self.vector_store.delete(new_refs)
            except Exception:
                logging.warning("Failed to roll back chunks of %s", entry.path, exc_info=True)
            raise

        if old_refs:
            try:
                await self.vector_store.delete(old_refs)
            except Exception:
                logging.warning(
                    "New chunks of %s are committed but %s old chunks could not be deleted.",
                    entry.path,
                    len(old_refs),
                    exc_info=True,
                )
        return ReconcileResult(
            identity=entry.identity,
            status=STATUS_INDEXED,
            chunks=len(new_refs),
        )


async def find_orphans(db_path: str, vector_store: Any) -> List[str]:
    """Vector document ids that no ledger entry references."""
    referenced = {ref for e in await dbmod.list_entries(db_path) for ref in e.chunk_refs}
    return [doc_id for doc_id in await vector_store.document_ids() if doc_id not in referenced]


async def remove_orphans(db_path: str, vector_store: Any) -> int:
    orphans = await find_orphans(db_path, vector_store)
    if orphans:
        logging.info("Deleting %s orphaned chunks from the vector store.", len(orphans))
        await vector_store.delete(orphans)
    return len(orphans)
