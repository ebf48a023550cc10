from __future__ import annotations

import asyncio
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

import httpx
import numpy as np


_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


async def post_with_retry(
    client: httpx.AsyncClient,
    url: str,
    *,
    json: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
    max_retries: int = 3,
) -> httpx.Response:
    """POST with exponential back-off on timeouts, network errors and retryable statuses."""
    last_exc: Exception | None = None
    for attempt in range(max_retries):
        try:
            resp = await client.post(url, json=json, headers=headers)
            if resp.status_code in _RETRYABLE_STATUS:
                raise httpx.HTTPStatusError("Retryable response", request=resp.request, response=resp)
            resp.raise_for_status()
            return resp
        except (httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError) as exc:
            last_exc = exc
            status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
            if status is not None and status not in _RETRYABLE_STATUS:
                raise
            if attempt >= max_retries - 1:
                raise
            backoff = 0.5 * (2 ** attempt) + random.random() * 0.1
            await asyncio.sleep(backoff)
    if last_exc:
        raise last_exc
    raise RuntimeError("Retry loop exited unexpectedly.")


# Backends return one float32 row per input text.
@runtime_checkable
class EmbedderBackend(Protocol):
    """What EmbeddingService needs from a backend."""

    async def encode(self, texts: List[str]) -> np.ndarray:
        ...

    async def close(self) -> None:
        ...


class _HttpBackend:
    def __init__(self, timeout_s: float = 120.0) -> None:
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()
        self._timeout_s = float(timeout_s)

    async def _get_client(self) -> httpx.AsyncClient:
        async with self._lock:
            if self._client is None:
                timeout = httpx.Timeout(connect=10.0, read=self._timeout_s, write=10.0, pool=10.0)
                limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
                self._client = httpx.AsyncClient(timeout=timeout, limits=limits)
            return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# Ollama back-end  (local inference server)
# ---------------------------------------------------------------------------
class OllamaBackend(_HttpBackend):
    """Calls a local Ollama server's /api/embed endpoint."""

    def __init__(self, model_name: str, url: str = "http://localhost:11434") -> None:
        super().__init__()
        self.model_name = model_name
        self.url = url.rstrip("/")

    async def encode(self, texts: List[str]) -> np.ndarray:
        client = await self._get_client()
        resp = await post_with_retry(
            client,
            f"{self.url}/api/embed",
            json={"model": self.model_name, "input": texts},
        )
        data = resp.json()
        return np.asarray(data.get("embeddings", []), dtype=np.float32)


# ---------------------------------------------------------------------------
# OpenAI-compatible back-end  (OpenAI, Together, Groq, …)
# ---------------------------------------------------------------------------
class OpenAIBackend(_HttpBackend):
    """Calls an OpenAI-compatible /embeddings endpoint."""

    def __init__(
        self,
        model_name: str,
        api_key: str,
        api_base: str = "https://api.openai.com/v1",
    ) -> None:
        super().__init__()
        self.model_name = model_name
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")

    async def encode(self, texts: List[str]) -> np.ndarray:
        client = await self._get_client()
        resp = await post_with_retry(
            client,
            f"{self.api_base}/embeddings",
            json={"model": self.model_name, "input": texts},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        data = resp.json()
        vectors = [item["embedding"] for item in sorted(data["data"], key=lambda d: d.get("index", 0))]
        return np.asarray(vectors, dtype=np.float32)


# ---------------------------------------------------------------------------
# sentence-transformers back-end  (in-process model)
# ---------------------------------------------------------------------------
class SentenceTransformerBackend:
    """Runs a local SentenceTransformer model on a worker thread."""

    _shared_lock = threading.Lock()
    _shared_models: Dict[str, Any] = {}

    def __init__(self, model_name: str, device: str = "cpu") -> None:
        self.model_name = model_name
        self.device = device
        self._pool = ThreadPoolExecutor(max_workers=1)

    def _model(self) -> Any:
        from sentence_transformers import SentenceTransformer

        key = f"{self.model_name}@{self.device}"
        with self._shared_lock:
            model = self._shared_models.get(key)
            if model is None:
                model = SentenceTransformer(self.model_name, device=self.device)
                self._shared_models[key] = model
        return model

    async def encode(self, texts: List[str]) -> np.ndarray:
        def _encode() -> np.ndarray:
            vecs = self._model().encode(
                texts,
                batch_size=max(1, min(128, len(texts))),
                normalize_embeddings=True,
                show_progress_bar=False,
            )
            return np.asarray(vecs, dtype=np.float32)

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool, _encode)

    async def close(self) -> None:
        self._pool.shutdown(wait=True, cancel_futures=True)


class EmbeddingService:
    """Batches texts through the configured backend and returns float32 vectors."""

    def __init__(self, backend: EmbedderBackend, *, batch_size: int = 32) -> None:
        self._backend = backend
        self._batch_size = max(1, int(batch_size))

    @classmethod
    def from_config(cls, cfg: Any) -> "EmbeddingService":
        backend: EmbedderBackend
        if cfg.embedding_backend == "openai":
            backend = OpenAIBackend(
                model_name=cfg.embedding_model,
                api_key=cfg.openai_api_key,
                api_base=cfg.openai_api_base,
            )
        elif cfg.embedding_backend == "sentence_transformers":
            backend = SentenceTransformerBackend(model_name=cfg.embedding_model)
        else:
            backend = OllamaBackend(model_name=cfg.embedding_model, url=cfg.ollama_url)
        return cls(backend, batch_size=cfg.embedding_batch_size)

    async def embed_texts(self, texts: Sequence[str]) -> np.ndarray:
        text_list = list(texts)
        if not text_list:
            return np.zeros((0, 0), dtype=np.float32)
        parts: List[np.ndarray] = []
        for i in range(0, len(text_list), self._batch_size):
            batch = text_list[i:i + self._batch_size]
            vecs = np.asarray(await self._backend.encode(batch), dtype=np.float32)
            if vecs.ndim != 2 or vecs.shape[0] != len(batch):
                raise RuntimeError(
                    f"Embedding backend returned {vecs.shape[0] if vecs.ndim else 0} vectors for {len(batch)} texts."
                )
            parts.append(vecs)
        return np.vstack(parts)

    async def embed_one(self, text: str) -> np.ndarray:
        vecs = await self.embed_texts([text])
        return vecs[0]

    async def close(self) -> None:
        await self._backend.close()
