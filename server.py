from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from fastmcp import FastMCP

from codelore_mcp import chunking
from codelore_mcp import db as dbmod
from codelore_mcp import tools
from codelore_mcp.config import load_config
from codelore_mcp.embeddings import EmbeddingService
from codelore_mcp.enrichment import MetadataEnricher
from codelore_mcp.errors import RetrievalError, ScanError
from codelore_mcp.generation import GenerationService
from codelore_mcp.indexing import Indexer
from codelore_mcp.pipeline import RagPipeline
from codelore_mcp.retrieval import Retriever
from codelore_mcp.scanning import ChangeScanner
from codelore_mcp.security import PathContext
from codelore_mcp.vectorstore import SqliteVectorStore


logging.basicConfig(
    level=os.environ.get("CODELORE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

cfg = load_config()
dbmod.ensure_db_permissions(cfg.db_path)
chunking.configure_tokenizer_path(cfg.tokenizer_path)

project_context = cfg.project_context()
path_context = PathContext(project_context.root_directories())
embedding_service = EmbeddingService.from_config(cfg)
generation_service = GenerationService.from_config(cfg)
vector_store = SqliteVectorStore(cfg.vector_db_path, embedding_service)
enricher = MetadataEnricher(generation_service)
indexer = Indexer(
    db_path=cfg.db_path,
    project_context=project_context,
    path_context=path_context,
    vector_store=vector_store,
    enricher=enricher,
    chunk_size_tokens=cfg.chunk_size_tokens,
    min_chunk_chars=cfg.min_chunk_chars,
    max_file_size_mb=cfg.max_file_size_mb,
)
scanner = ChangeScanner(cfg.db_path, project_context, path_context, cfg.ignore_patterns)
pipeline = RagPipeline(
    db_path=cfg.db_path,
    scanner=scanner,
    indexer=indexer,
    concurrency=cfg.index_concurrency,
)
retriever = Retriever(
    model=generation_service,
    vector_store=vector_store,
    project_context=project_context,
    top_k=cfg.context_results,
    similarity_threshold=cfg.similarity_threshold,
    tool_top_k=cfg.tool_context_results,
    tool_similarity_threshold=cfg.tool_similarity_threshold,
)
registry = tools.build_tool_registry(
    project_context=project_context,
    path_context=path_context,
    retriever=retriever,
)


async def _startup_tasks() -> None:
    await dbmod.init_db(cfg.db_path)
    await vector_store.init()
    logging.info("Storage: ledger=%s vectors=%s", cfg.db_path, cfg.vector_db_path)
    logging.info("Models: chat=%s/%s embeddings=%s/%s", cfg.chat_backend, cfg.chat_model, cfg.embedding_backend, cfg.embedding_model)
    if not cfg.rebuild_on_startup:
        logging.info("Startup rebuild disabled.")
        return
    try:
        report = await pipeline.rebuild(force=cfg.invalidate_on_startup)
    except ScanError:
        # Keep serving whatever the index already holds.
        logging.error("Startup rebuild aborted; serving the previous index.", exc_info=True)
        return
    if report.failed:
        logging.warning("%s files could not be indexed and stay pending.", len(report.failed))


async def _shutdown() -> None:
    logging.info("Shutdown initiated")
    try:
        await generation_service.close()
        await embedding_service.close()
        await dbmod.close_db_pool()
    except Exception:
        logging.warning("Shutdown cleanup failed", exc_info=True)


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[Dict[str, Any]]:
    # The index is brought up to date before the first request is served.
    await _startup_tasks()
    try:
        yield {}
    finally:
        await _shutdown()


mcp = FastMCP(name="Codelore MCP", lifespan=_lifespan)


async def _dispatch(name: str, **arguments: Any) -> Dict[str, Any]:
    response = await registry.dispatch(name, arguments)
    return response.as_dict()


@mcp.tool(description=tools.GET_FILE_INFOS_DESCRIPTION)
async def get_file_infos(dir: str) -> Dict[str, Any]:
    return await _dispatch("get_file_infos", dir=dir)


@mcp.tool(description=tools.GET_FILE_CONTENT_DESCRIPTION)
async def get_file_content(file_path: str) -> Dict[str, Any]:
    return await _dispatch("get_file_content", file_path=file_path)


@mcp.tool(description=tools.WRITE_FILE_DESCRIPTION)
async def write_file(file_path: str, content: str) -> Dict[str, Any]:
    return await _dispatch("write_file", file_path=file_path, content=content)


@mcp.tool(description=tools.GET_ROOT_DIRECTORIES_DESCRIPTION)
async def get_root_directories() -> Dict[str, Any]:
    return await _dispatch("get_root_directories")


@mcp.tool(description=tools.GET_PROJECTS_DESCRIPTION)
async def get_projects() -> Dict[str, Any]:
    return await _dispatch("get_projects")


@mcp.tool(description=tools.GET_ANY_CONTEXT_DATA_DESCRIPTION)
async def get_any_context_data(query: str) -> Dict[str, Any]:
    return await _dispatch("get_any_context_data", query=query)


@mcp.tool
async def get_initial_context(question: str) -> Dict[str, Any]:
    """Rewrite a question into a search query and return the best matching knowledge base excerpts."""
    try:
        data = await retriever.get_initial_context_for_question(question)
    except RetrievalError as exc:
        logging.error("Initial context retrieval failed", exc_info=True)
        return tools.ToolResponse(success=False, error_message=str(exc)).as_dict()
    return tools.ToolResponse(success=True, data=data).as_dict()


@mcp.tool
async def rebuild_index(force: bool = False) -> Dict[str, Any]:
    """Scan the projects and re-index changed files. force=True re-embeds every file."""
    try:
        report = await pipeline.rebuild(force=force)
    except ScanError as exc:
        return {"error": str(exc)}
    return report.as_dict()


@mcp.tool
async def index_status() -> Dict[str, Any]:
    """Report ledger and vector store counts."""
    return await pipeline.status()


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    # Stdio transport by default
    main()
