from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List

from .config import ProjectContext
from .errors import RetrievalError
from .generation import ChatModel, user
from .vectorstore import SearchResult, VectorStore


QUERY_REWRITE_TEMPLATE = """Your task is to prepare a query for Retrieval Augmented Generation (RAG),
based on a multilingual embedding model and a vector store, to retrieve the data necessary
to answer the question provided by the user. Respond with ONLY the optimized query, no explanations;
use keywords to search data for the provided question. The RAG store contains source code and documentation.

You are a part of the system responsible for generating code for projects described by this context:
{project_context}
The data in the RAG store contains source code and related metadata for the applications being built.

QUESTION:
{question}
"""

# Separator between results of the initial context block.
CONTEXT_SEPARATOR = "\n---"
# Separator used by the agent tool.
TOOL_CONTEXT_SEPARATOR = "\n---\n"


def join_results(results: List[SearchResult], separator: str) -> str:
    return separator.join(r.document.formatted_content() for r in results)


@dataclass
class Retriever:
    model: ChatModel
    vector_store: VectorStore
    project_context: ProjectContext
    top_k: int = 5
    similarity_threshold: float = 0.5
    tool_top_k: int = 4
    tool_similarity_threshold: float = 0.0

    async def transform_question(self, question: str) -> str:
        prompt = QUERY_REWRITE_TEMPLATE.format(
            project_context=self.project_context.context(),
            question=question,
        )
        rewritten = (await self.model.prompt([user(prompt)]) or "").strip()
        # An empty rewrite is useless for search; fall back to the question itself.
        return rewritten or question

    async def get_initial_context_for_question(self, question: str) -> str:
        """Context block for a question, or "" when nothing scores above the threshold.

        Raises RetrievalError when the rewrite or the search itself fails.
        """
        start = time.perf_counter()
        try:
            query = await self.transform_question(question)
            results = await self.vector_store.similarity_search(
                query,
                top_k=self.top_k,
                similarity_threshold=self.similarity_threshold,
            )
        except Exception as exc:
            raise RetrievalError(f"Retrieving context failed: {exc}") from exc
        logging.info(
            "Retrieved %s context documents",
            len(results),
            extra={
                "operation": "initial_context",
                "results": len(results),
                "duration_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        if not results:
            return ""
        return join_results(results, CONTEXT_SEPARATOR)

    async def search_context(self, query: str) -> str:
        """Raw similarity search for the agent tool; the query is used as given."""
        logging.info("Retrieving RAG context for question (tool): %s", query)
        try:
            results = await self.vector_store.similarity_search(
                query,
                top_k=self.tool_top_k,
                similarity_threshold=self.tool_similarity_threshold,
            )
        except Exception as exc:
            raise RetrievalError(f"Error retrieving RAG context: {exc}") from exc
        return join_results(results, TOOL_CONTEXT_SEPARATOR)
