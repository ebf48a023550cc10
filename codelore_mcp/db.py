from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiosqlite


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS indexed_files (
    entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    app_id TEXT NOT NULL,
    path TEXT NOT NULL,
    modified_at INTEGER,
    modified_at_stored INTEGER,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE (project_id, app_id, path)
);

CREATE INDEX IF NOT EXISTS idx_indexed_files_pending
ON indexed_files(project_id, app_id, path)
WHERE modified_at IS NULL OR modified_at IS NOT modified_at_stored;

CREATE TABLE IF NOT EXISTS indexed_file_chunks (
    chunk_id TEXT PRIMARY KEY,
    entry_id INTEGER NOT NULL,
    sequence_number INTEGER NOT NULL,
    FOREIGN KEY(entry_id) REFERENCES indexed_files(entry_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_indexed_file_chunks_entry
ON indexed_file_chunks(entry_id, sequence_number);
"""

# SQLite's default SQLITE_MAX_VARIABLE_NUMBER is 999 on older builds.
_IN_BATCH_SIZE = 900


@dataclass(frozen=True)
class LedgerEntry:
    """One tracked file.

    ``last_seen_modified_at`` is the on-disk mtime (ns) observed by the last
    scan, ``None`` once the file is gone. ``last_indexed_modified_at`` is the
    mtime of the content currently held by the vector store.
    """

    entry_id: int
    project_id: str
    app_id: str
    path: str
    last_seen_modified_at: Optional[int]
    last_indexed_modified_at: Optional[int]
    chunk_refs: Tuple[str, ...] = ()

    @property
    def identity(self) -> Tuple[str, str, str]:
        return (self.project_id, self.app_id, self.path)

    @property
    def is_pending(self) -> bool:
        if self.last_seen_modified_at is None:
            return True
        return self.last_seen_modified_at != self.last_indexed_modified_at

    @property
    def is_deleted(self) -> bool:
        return self.last_seen_modified_at is None


@dataclass(frozen=True)
class SQLQuery:
    text: str
    params: Tuple[Any, ...]


def build_in_query(prefix_sql: str, values: Sequence[Any], suffix_sql: str = "") -> SQLQuery:
    placeholders = ",".join(["?"] * len(values))
    sql = prefix_sql + "(" + placeholders + ")" + suffix_sql
    return SQLQuery(sql, tuple(values))


class _ConnectionPool:
    def __init__(self, db_path: str, maxsize: int = 10, timeout_s: float = 30.0) -> None:
        self.db_path = db_path
        self.maxsize = maxsize
        self.timeout_s = timeout_s
        self._queue: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize)
        self._created = 0
        self._lock = asyncio.Lock()
        self._all: set[aiosqlite.Connection] = set()
        self._semaphore = asyncio.Semaphore(maxsize)
        self._closing = False

    async def acquire(self) -> aiosqlite.Connection:
        if self._closing:
            raise RuntimeError("Connection pool is closing")
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise TimeoutError("Timed out waiting for database connection") from exc

        # Any failure after this point must give the semaphore slot back.
        try:
            try:
                return self._queue.get_nowait()
            except asyncio.QueueEmpty:
                should_create = False
                async with self._lock:
                    if self._created < self.maxsize:
                        self._created += 1
                        should_create = True
                if should_create:
                    try:
                        conn = await aiosqlite.connect(self.db_path, isolation_level=None)
                        await conn.execute("PRAGMA foreign_keys=ON;")
                        await conn.execute("PRAGMA journal_mode=WAL;")
                        await conn.execute("PRAGMA busy_timeout=5000;")
                        self._all.add(conn)
                        return conn
                    except Exception:
                        async with self._lock:
                            self._created -= 1
                        raise
                return await self._queue.get()
        except BaseException:
            self._semaphore.release()
            raise

    async def release(self, conn: aiosqlite.Connection) -> None:
        try:
            if conn.in_transaction:
                await conn.rollback()
            await self._queue.put(conn)
        except Exception:
            logging.warning("Failed to rollback or return pooled connection; closing.", exc_info=True)
            try:
                await conn.close()
            except Exception:
                logging.warning("Failed to close connection during release", exc_info=True)
            self._all.discard(conn)
            if self._created > 0:
                self._created -= 1
        finally:
            self._semaphore.release()

    async def close(self) -> None:
        self._closing = True
        for _ in range(self.maxsize):
            await self._semaphore.acquire()
        conns = list(self._all)
        self._all.clear()
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        for conn in conns:
            await conn.close()


_pools: Dict[Tuple[str, int], _ConnectionPool] = {}
_pool_lock: Optional[asyncio.Lock] = None


def _get_pool_lock() -> asyncio.Lock:
    global _pool_lock
    if _pool_lock is None:
        _pool_lock = asyncio.Lock()
    return _pool_lock


async def _get_pool(db_path: str) -> _ConnectionPool:
    ensure_db_permissions(db_path)
    # Pools are bound to the loop that created their connections.
    key = (db_path, id(asyncio.get_running_loop()))
    async with _get_pool_lock():
        pool = _pools.get(key)
        if pool is None:
            pool = _ConnectionPool(db_path=db_path, maxsize=10)
            _pools[key] = pool
        return pool


def ensure_db_permissions(db_path: str) -> None:
    db_path = os.path.abspath(db_path)
    db_dir = os.path.dirname(db_path)
    os.makedirs(db_dir, exist_ok=True)
    if not os.path.exists(db_path):
        flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
        try:
            fd = os.open(db_path, flags, 0o600)
            os.close(fd)
        except FileExistsError:
            pass
        except OSError:
            logging.warning("Failed to create database file %s securely.", db_path, exc_info=True)
    if os.name != "nt":
        try:
            os.chmod(db_path, 0o600)
        except OSError:
            logging.warning("Failed to chmod database file %s", db_path, exc_info=True)


async def close_db_pool(db_path: Optional[str] = None) -> None:
    async with _get_pool_lock():
        if db_path is None:
            keys = list(_pools.keys())
        else:
            keys = [k for k in _pools if k[0] == db_path]
        pools = [_pools.pop(k) for k in keys]
    for pool in pools:
        await pool.close()


@asynccontextmanager
async def get_connection(db_path: str) -> AsyncIterator[aiosqlite.Connection]:
    pool = await _get_pool(db_path)
    conn = await pool.acquire()
    try:
        yield conn
    finally:
        await pool.release(conn)


async def init_db(db_path: str) -> None:
    ensure_db_permissions(db_path)
    async with get_connection(db_path) as db:
        await db.executescript(SCHEMA_SQL)
        await db.commit()


# -----------------
# Ledger operations
# -----------------


async def _fetch_chunk_refs(db: aiosqlite.Connection, entry_ids: Sequence[int]) -> Dict[int, List[str]]:
    out: Dict[int, List[str]] = {int(eid): [] for eid in entry_ids}
    for i in range(0, len(entry_ids), _IN_BATCH_SIZE):
        batch = list(entry_ids[i:i + _IN_BATCH_SIZE])
        query = build_in_query(
            "SELECT entry_id, chunk_id FROM indexed_file_chunks WHERE entry_id IN ",
            batch,
            " ORDER BY entry_id, sequence_number",
        )
        rows = await db.execute_fetchall(query.text, query.params)
        for entry_id, chunk_id in rows:
            out[int(entry_id)].append(str(chunk_id))
    return out


async def _rows_to_entries(db: aiosqlite.Connection, rows: Sequence[Any]) -> List[LedgerEntry]:
    refs = await _fetch_chunk_refs(db, [int(r[0]) for r in rows])
    return [
        LedgerEntry(
            entry_id=int(r[0]),
            project_id=str(r[1]),
            app_id=str(r[2]),
            path=str(r[3]),
            last_seen_modified_at=None if r[4] is None else int(r[4]),
            last_indexed_modified_at=None if r[5] is None else int(r[5]),
            chunk_refs=tuple(refs.get(int(r[0]), [])),
        )
        for r in rows
    ]


_ENTRY_COLUMNS = "entry_id, project_id, app_id, path, modified_at, modified_at_stored"
# A missing file stays pending until its row is removed, even if it was never indexed.
_PENDING_SQL = "(modified_at IS NULL OR modified_at IS NOT modified_at_stored)"


async def mark_pending(
    db_path: str,
    *,
    project_id: str,
    app_id: str,
    path: str,
    observed_modified_at: Optional[int],
) -> None:
    """Upsert a file by identity and record the mtime seen on disk.

    New rows start with ``modified_at_stored`` NULL, so they are pending.
    Repeating the call with the same mtime changes nothing.
    """
    await mark_pending_many(db_path, [(project_id, app_id, path, observed_modified_at)])


async def mark_pending_many(
    db_path: str,
    rows: Sequence[Tuple[str, str, str, Optional[int]]],
) -> None:
    if not rows:
        return
    async with get_connection(db_path) as db:
        await db.execute("BEGIN")
        await db.executemany(
            """
            INSERT INTO indexed_files(project_id, app_id, path, modified_at)
            VALUES(?,?,?,?)
            ON CONFLICT(project_id, app_id, path) DO UPDATE SET
              modified_at = excluded.modified_at,
              updated_at = CASE
                WHEN indexed_files.modified_at IS excluded.modified_at THEN indexed_files.updated_at
                ELSE datetime('now')
              END
            """,
            [(p, a, rel, None if m is None else int(m)) for p, a, rel, m in rows],
        )
        await db.commit()


async def invalidate_all(db_path: str) -> int:
    """Forget every on-disk mtime, forcing the next scan to re-observe each file.

    Files the scan does not find again stay at NULL and are reconciled as
    deletions.
    """
    async with get_connection(db_path) as db:
        cursor = await db.execute(
            "UPDATE indexed_files SET modified_at = NULL, updated_at = datetime('now')"
        )
        await db.commit()
        return int(cursor.rowcount or 0)


async def reset_indexed(db_path: str) -> int:
    """Clear every stored index mtime so all files are embedded again."""
    async with get_connection(db_path) as db:
        cursor = await db.execute(
            "UPDATE indexed_files SET modified_at_stored = NULL, updated_at = datetime('now')"
        )
        await db.commit()
        return int(cursor.rowcount or 0)


async def list_pending(db_path: str) -> List[LedgerEntry]:
    async with get_connection(db_path) as db:
        rows = await db.execute_fetchall(
            f"""
            SELECT {_ENTRY_COLUMNS}
            FROM indexed_files
            WHERE {_PENDING_SQL}
            ORDER BY project_id, app_id, path
            """
        )
        return await _rows_to_entries(db, rows)


async def list_entries(db_path: str, *, project_id: Optional[str] = None, app_id: Optional[str] = None) -> List[LedgerEntry]:
    clauses: List[str] = []
    params: List[Any] = []
    if project_id is not None:
        clauses.append("project_id = ?")
        params.append(project_id)
    if app_id is not None:
        clauses.append("app_id = ?")
        params.append(app_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    async with get_connection(db_path) as db:
        rows = await db.execute_fetchall(
            f"SELECT {_ENTRY_COLUMNS} FROM indexed_files {where} ORDER BY project_id, app_id, path",
            tuple(params),
        )
        return await _rows_to_entries(db, rows)


async def get_entry(db_path: str, *, project_id: str, app_id: str, path: str) -> Optional[LedgerEntry]:
    async with get_connection(db_path) as db:
        rows = await db.execute_fetchall(
            f"SELECT {_ENTRY_COLUMNS} FROM indexed_files WHERE project_id = ? AND app_id = ? AND path = ?",
            (project_id, app_id, path),
        )
        if not rows:
            return None
        return (await _rows_to_entries(db, rows))[0]


async def get_entry_by_id(db_path: str, entry_id: int) -> Optional[LedgerEntry]:
    async with get_connection(db_path) as db:
        rows = await db.execute_fetchall(
            f"SELECT {_ENTRY_COLUMNS} FROM indexed_files WHERE entry_id = ?",
            (int(entry_id),),
        )
        if not rows:
            return None
        return (await _rows_to_entries(db, rows))[0]


async def reconciled(
    db_path: str,
    entry: LedgerEntry,
    *,
    new_chunk_refs: Sequence[str],
    new_indexed_at: Optional[int],
) -> None:
    """Atomically replace the chunk refs and stored mtime of one entry.

    ``new_chunk_refs`` is ordered by sequence number.
    """
    async with get_connection(db_path) as db:
        await db.execute("BEGIN IMMEDIATE")
        try:
            cursor = await db.execute(
                "UPDATE indexed_files SET modified_at_stored = ?, updated_at = datetime('now') "
                "WHERE entry_id = ?",
                (new_indexed_at, int(entry.entry_id)),
            )
            if cursor.rowcount == 0:
                raise LookupError(f"Ledger entry vanished during reconciliation: {entry.identity}")
            await db.execute(
                "DELETE FROM indexed_file_chunks WHERE entry_id = ?",
                (int(entry.entry_id),),
            )
            if new_chunk_refs:
                await db.executemany(
                    "INSERT INTO indexed_file_chunks(chunk_id, entry_id, sequence_number) VALUES(?,?,?)",
                    [(str(cid), int(entry.entry_id), seq) for seq, cid in enumerate(new_chunk_refs)],
                )
            await db.commit()
        except BaseException:
            await db.rollback()
            raise


async def remove_entry(db_path: str, entry: LedgerEntry) -> None:
    """Delete a ledger row; only valid for a confirmed deletion."""
    if not entry.is_deleted:
        raise ValueError(f"Refusing to remove ledger entry for an existing file: {entry.identity}")
    async with get_connection(db_path) as db:
        # Guard against a concurrent rescan that saw the file reappear.
        await db.execute(
            "DELETE FROM indexed_files WHERE entry_id = ? AND modified_at IS NULL",
            (int(entry.entry_id),),
        )
        await db.commit()


async def ledger_stats(db_path: str) -> Dict[str, int]:
    async with get_connection(db_path) as db:
        row = await db.execute_fetchall(
            """
            SELECT
              COUNT(*),
              SUM(CASE WHEN modified_at IS NULL OR modified_at IS NOT modified_at_stored THEN 1 ELSE 0 END),
              SUM(CASE WHEN modified_at IS NULL THEN 1 ELSE 0 END)
            FROM indexed_files
            """
        )
        chunk_row = await db.execute_fetchall("SELECT COUNT(*) FROM indexed_file_chunks")
    tracked, pending, deleted = row[0] if row else (0, 0, 0)
    return {
        "tracked_files": int(tracked or 0),
        "pending_files": int(pending or 0),
        "pending_deletions": int(deleted or 0),
        "chunk_refs": int(chunk_row[0][0] if chunk_row else 0),
    }
