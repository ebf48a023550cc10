import hashlib
import json
import re
from types import SimpleNamespace

import numpy as np
import pytest
import pytest_asyncio

from codelore_mcp import chunking
from codelore_mcp import db as dbmod
from codelore_mcp import locks
from codelore_mcp.config import config_from_mapping
from codelore_mcp.enrichment import MetadataEnricher
from codelore_mcp.indexing import Indexer
from codelore_mcp.pipeline import RagPipeline
from codelore_mcp.retrieval import Retriever
from codelore_mcp.scanning import ChangeScanner
from codelore_mcp.security import PathContext
from codelore_mcp.vectorstore import SqliteVectorStore


GOOD_METADATA = json.dumps(
    [
        {"key": "language", "value": "java"},
        {"key": "responsibility", "value": "Test fixture"},
    ]
)


class HashEmbedder:
    """Bag-of-words hashing embedder: texts sharing words get similar vectors."""

    def __init__(self, dim=64):
        self.dim = dim
        self.calls = 0

    def _vec(self, text):
        v = np.zeros(self.dim, dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            h = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16)
            v[h % self.dim] += 1.0
        return v

    async def embed_texts(self, texts):
        self.calls += 1
        return np.vstack([self._vec(t) for t in texts]).astype(np.float32)

    async def embed_one(self, text):
        return self._vec(text)


class ScriptedChat:
    """Chat model fake; ``script`` is a list of replies or a callable(messages) -> reply."""

    def __init__(self, script=None):
        self.script = script
        self.calls = []

    async def prompt(self, messages):
        self.calls.append(list(messages))
        if callable(self.script):
            return self.script(messages)
        if isinstance(self.script, list):
            return self.script.pop(0)
        return GOOD_METADATA


class CountingStore:
    """Wraps a vector store and counts mutations."""

    def __init__(self, inner):
        self.inner = inner
        self.adds = 0
        self.deletes = 0
        self.fail_add_for = None
        self.fail_delete = False

    async def add(self, documents):
        self.adds += 1
        if self.fail_add_for and any(d.metadata.get("filepath") == self.fail_add_for for d in documents):
            from codelore_mcp.errors import VectorStoreWriteError

            raise VectorStoreWriteError("injected write failure")
        await self.inner.add(documents)

    async def delete(self, document_ids):
        self.deletes += 1
        if self.fail_delete:
            from codelore_mcp.errors import VectorStoreDeleteError

            raise VectorStoreDeleteError("injected delete failure")
        await self.inner.delete(document_ids)

    async def similarity_search(self, query, *, top_k, similarity_threshold):
        return await self.inner.similarity_search(query, top_k=top_k, similarity_threshold=similarity_threshold)

    async def document_ids(self, where=None):
        return await self.inner.document_ids(where)

    async def count(self):
        return await self.inner.count()


@pytest_asyncio.fixture
async def db_path(tmp_path):
    path = str(tmp_path / "ledger.db")
    await dbmod.init_db(path)
    yield path
    await dbmod.close_db_pool()
    locks._entry_locks.clear()


@pytest.fixture
def app_root(tmp_path):
    root = tmp_path / "shop-backend"
    root.mkdir()
    return root


def make_config(tmp_path, app_root, **overrides):
    data = {
        "db_path": str(tmp_path / "ledger.db"),
        "vector_db_path": str(tmp_path / "vectors.db"),
        "projects": [
            {
                "id": "shop",
                "name": "Shop",
                "apps": [{"id": "shop-backend", "type": "backend", "path": str(app_root)}],
            }
        ],
    }
    data.update(overrides)
    return config_from_mapping(data)


@pytest_asyncio.fixture
async def stack(tmp_path, app_root, db_path):
    chunking.configure_tokenizer_path("")
    cfg = make_config(tmp_path, app_root)
    assert cfg.db_path == db_path
    project_context = cfg.project_context()
    path_context = PathContext(project_context.root_directories())
    embedder = HashEmbedder()
    store = CountingStore(SqliteVectorStore(cfg.vector_db_path, embedder))
    chat = ScriptedChat()
    indexer = Indexer(
        db_path=cfg.db_path,
        project_context=project_context,
        path_context=path_context,
        vector_store=store,
        enricher=MetadataEnricher(chat),
        chunk_size_tokens=cfg.chunk_size_tokens,
        min_chunk_chars=cfg.min_chunk_chars,
        max_file_size_mb=cfg.max_file_size_mb,
    )
    scanner = ChangeScanner(cfg.db_path, project_context, path_context, cfg.ignore_patterns)
    pipeline = RagPipeline(db_path=cfg.db_path, scanner=scanner, indexer=indexer)
    retriever = Retriever(
        model=chat,
        vector_store=store,
        project_context=project_context,
        top_k=cfg.context_results,
        similarity_threshold=cfg.similarity_threshold,
    )
    return SimpleNamespace(
        cfg=cfg,
        root=app_root,
        project_context=project_context,
        path_context=path_context,
        store=store,
        chat=chat,
        indexer=indexer,
        scanner=scanner,
        pipeline=pipeline,
        retriever=retriever,
    )
