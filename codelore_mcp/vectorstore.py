from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np
from numba import jit

from . import db as dbmod
from .errors import VectorStoreDeleteError, VectorStoreWriteError


VECTOR_SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS vector_documents (
    document_id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    metadata TEXT NOT NULL,
    embedding BLOB NOT NULL,
    dim INTEGER NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);
"""


@dataclass(frozen=True)
class Document:
    document_id: str
    content: str
    metadata: Dict[str, str] = field(default_factory=dict)

    def formatted_content(self) -> str:
        """Metadata as ``key: value`` lines, a blank line, then the content."""
        header = "\n".join(f"{k}: {v}" for k, v in self.metadata.items())
        return f"{header}\n\n{self.content}"


@dataclass(frozen=True)
class SearchResult:
    document: Document
    score: float


class VectorStore(Protocol):
    async def add(self, documents: Sequence[Document]) -> None:
        ...

    async def delete(self, document_ids: Sequence[str]) -> None:
        ...

    async def similarity_search(
        self, query: str, *, top_k: int, similarity_threshold: float
    ) -> List[SearchResult]:
        ...


@jit(nopython=True)
def _cosine_scores(E: np.ndarray, q: np.ndarray) -> np.ndarray:
    n, d = E.shape
    scores = np.zeros(n, dtype=np.float32)
    q_sq = 0.0
    for j in range(d):
        q_sq += q[j] * q[j]
    if q_sq == 0.0:
        return scores
    q_norm = np.sqrt(q_sq)
    for i in range(n):
        dot = 0.0
        row_sq = 0.0
        for j in range(d):
            dot += E[i, j] * q[j]
            row_sq += E[i, j] * E[i, j]
        if row_sq == 0.0:
            continue
        scores[i] = dot / (np.sqrt(row_sq) * q_norm)
    return scores


def _normalize(vecs: np.ndarray) -> np.ndarray:
    vecs = np.asarray(vecs, dtype=np.float32)
    norms = np.linalg.norm(vecs, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (vecs / norms).astype(np.float32)


class SqliteVectorStore:
    """Embedded documents in their own SQLite file, searched by brute-force cosine.

    Sized for the local project trees this server indexes: the embedding
    matrix is loaded once and kept in memory until the next write.
    """

    def __init__(self, db_path: str, embedder: Any) -> None:
        self.db_path = db_path
        self._embedder = embedder
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._cache_lock = asyncio.Lock()
        self._cache: Optional[Tuple[List[str], np.ndarray]] = None
        self._version = 0

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            dbmod.ensure_db_permissions(self.db_path)
            async with dbmod.get_connection(self.db_path) as db:
                await db.executescript(VECTOR_SCHEMA_SQL)
                await db.commit()
            self._initialized = True

    def _invalidate_cache(self) -> None:
        self._version += 1
        self._cache = None

    async def add(self, documents: Sequence[Document]) -> None:
        docs = list(documents)
        if not docs:
            return
        await self.init()
        start = time.perf_counter()
        try:
            vecs = _normalize(await self._embedder.embed_texts([d.content for d in docs]))
            rows = [
                (
                    d.document_id,
                    d.content,
                    json.dumps(d.metadata, ensure_ascii=False),
                    vecs[i].tobytes(),
                    int(vecs.shape[1]),
                )
                for i, d in enumerate(docs)
            ]
            async with dbmod.get_connection(self.db_path) as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    await db.executemany(
                        "INSERT INTO vector_documents(document_id, content, metadata, embedding, dim) "
                        "VALUES(?,?,?,?,?)",
                        rows,
                    )
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise
        except Exception as exc:
            raise VectorStoreWriteError(f"Failed to add {len(docs)} documents: {exc}") from exc
        finally:
            self._invalidate_cache()
        logging.debug(
            "Vector store add complete",
            extra={
                "operation": "vector_add",
                "documents": len(docs),
                "duration_ms": int((time.perf_counter() - start) * 1000),
            },
        )

    async def delete(self, document_ids: Sequence[str]) -> None:
        ids = [str(i) for i in document_ids]
        if not ids:
            return
        await self.init()
        try:
            async with dbmod.get_connection(self.db_path) as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    for i in range(0, len(ids), dbmod._IN_BATCH_SIZE):
                        query = dbmod.build_in_query(
                            "DELETE FROM vector_documents WHERE document_id IN ",
                            ids[i:i + dbmod._IN_BATCH_SIZE],
                        )
                        await db.execute(query.text, query.params)
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise
        except Exception as exc:
            raise VectorStoreDeleteError(f"Failed to delete {len(ids)} documents: {exc}") from exc
        finally:
            self._invalidate_cache()

    async def _matrix(self) -> Tuple[List[str], np.ndarray]:
        async with self._cache_lock:
            if self._cache is not None:
                return self._cache
            version = self._version
            async with dbmod.get_connection(self.db_path) as db:
                rows = await db.execute_fetchall(
                    "SELECT document_id, embedding, dim FROM vector_documents ORDER BY document_id"
                )
            ids: List[str] = []
            vectors: List[np.ndarray] = []
            dim: Optional[int] = None
            for document_id, blob, row_dim in rows:
                if dim is None:
                    dim = int(row_dim)
                if int(row_dim) != dim:
                    logging.warning("Skipping vector %s with dimension %s (expected %s)", document_id, row_dim, dim)
                    continue
                ids.append(str(document_id))
                vectors.append(np.frombuffer(blob, dtype=np.float32))
            matrix = np.vstack(vectors) if vectors else np.zeros((0, 0), dtype=np.float32)
            if version == self._version:
                self._cache = (ids, matrix)
            return ids, matrix

    async def _load_documents(self, document_ids: Sequence[str]) -> Dict[str, Document]:
        out: Dict[str, Document] = {}
        async with dbmod.get_connection(self.db_path) as db:
            for i in range(0, len(document_ids), dbmod._IN_BATCH_SIZE):
                query = dbmod.build_in_query(
                    "SELECT document_id, content, metadata FROM vector_documents WHERE document_id IN ",
                    list(document_ids[i:i + dbmod._IN_BATCH_SIZE]),
                )
                for document_id, content, metadata in await db.execute_fetchall(query.text, query.params):
                    out[str(document_id)] = Document(
                        document_id=str(document_id),
                        content=str(content),
                        metadata=dict(json.loads(metadata)),
                    )
        return out

    async def similarity_search(
        self, query: str, *, top_k: int, similarity_threshold: float
    ) -> List[SearchResult]:
        """Return up to ``top_k`` documents scoring at least ``similarity_threshold``, best first."""
        await self.init()
        if top_k <= 0:
            return []
        ids, matrix = await self._matrix()
        if not ids:
            return []
        q = np.asarray(await self._embedder.embed_one(query), dtype=np.float32)
        if q.shape[0] != matrix.shape[1]:
            raise ValueError(
                f"Query embedding dimension {q.shape[0]} does not match index dimension {matrix.shape[1]}."
            )
        scores = await asyncio.to_thread(_cosine_scores, matrix, q)
        # Stable sort keeps equal scores in document_id order.
        order = np.argsort(-scores, kind="stable")
        picked = [(ids[i], float(scores[i])) for i in order if scores[i] >= similarity_threshold][:top_k]
        if not picked:
            return []
        docs = await self._load_documents([doc_id for doc_id, _ in picked])
        return [SearchResult(document=docs[doc_id], score=score) for doc_id, score in picked if doc_id in docs]

    async def document_ids(self, where: Optional[Mapping[str, str]] = None) -> List[str]:
        """Ids of documents whose metadata contains every ``where`` key/value pair."""
        await self.init()
        async with dbmod.get_connection(self.db_path) as db:
            rows = await db.execute_fetchall(
                "SELECT document_id, metadata FROM vector_documents ORDER BY document_id"
            )
        if not where:
            return [str(r[0]) for r in rows]
        out: List[str] = []
        for document_id, metadata in rows:
            meta = json.loads(metadata)
            if all(meta.get(k) == v for k, v in where.items()):
                out.append(str(document_id))
        return out

    async def count(self) -> int:
        await self.init()
        async with dbmod.get_connection(self.db_path) as db:
            rows = await db.execute_fetchall("SELECT COUNT(*) FROM vector_documents")
        return int(rows[0][0]) if rows else 0
