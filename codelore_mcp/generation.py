from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

import httpx

from .embeddings import post_with_retry


@dataclass(frozen=True)
class ChatMessage:
    role: str  # "system" | "user" | "assistant"
    content: str

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


def user(content: str) -> ChatMessage:
    return ChatMessage(role="user", content=content)


def assistant(content: str) -> ChatMessage:
    return ChatMessage(role="assistant", content=content)


@runtime_checkable
class ChatModel(Protocol):
    """Anything that can answer a single- or multi-turn conversation."""

    async def prompt(self, messages: Sequence[ChatMessage]) -> str:
        ...


class _HttpChatBackend:
    def __init__(self, timeout_s: float = 300.0) -> None:
        self._client: Optional[httpx.AsyncClient] = None
        self._lock = asyncio.Lock()
        self._timeout_s = float(timeout_s)

    async def _get_client(self) -> httpx.AsyncClient:
        async with self._lock:
            if self._client is None:
                timeout = httpx.Timeout(connect=10.0, read=self._timeout_s, write=30.0, pool=10.0)
                self._client = httpx.AsyncClient(timeout=timeout)
            return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OllamaChatBackend(_HttpChatBackend):
    """Non-streaming calls to Ollama's /api/chat."""

    def __init__(self, model_name: str, url: str = "http://localhost:11434", timeout_s: float = 300.0) -> None:
        super().__init__(timeout_s)
        self.model_name = model_name
        self.url = url.rstrip("/")

    async def prompt(self, messages: Sequence[ChatMessage]) -> str:
        client = await self._get_client()
        resp = await post_with_retry(
            client,
            f"{self.url}/api/chat",
            json={
                "model": self.model_name,
                "messages": [m.as_dict() for m in messages],
                "stream": False,
            },
        )
        data = resp.json()
        return str((data.get("message") or {}).get("content") or "")


class OpenAIChatBackend(_HttpChatBackend):
    """Calls an OpenAI-compatible /chat/completions endpoint."""

    def __init__(
        self,
        model_name: str,
        api_key: str,
        api_base: str = "https://api.openai.com/v1",
        timeout_s: float = 300.0,
    ) -> None:
        super().__init__(timeout_s)
        self.model_name = model_name
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")

    async def prompt(self, messages: Sequence[ChatMessage]) -> str:
        client = await self._get_client()
        resp = await post_with_retry(
            client,
            f"{self.api_base}/chat/completions",
            json={"model": self.model_name, "messages": [m.as_dict() for m in messages]},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        data = resp.json()
        choices: List[Dict[str, Any]] = data.get("choices") or []
        if not choices:
            return ""
        return str((choices[0].get("message") or {}).get("content") or "")


class GenerationService:
    """Chat completions with a bound on concurrent in-flight requests."""

    def __init__(self, backend: Any, *, max_concurrent: int = 2) -> None:
        self._backend = backend
        self._semaphore = asyncio.Semaphore(max(1, int(max_concurrent)))

    @classmethod
    def from_config(cls, cfg: Any) -> "GenerationService":
        if cfg.chat_backend == "openai":
            backend: Any = OpenAIChatBackend(
                model_name=cfg.chat_model,
                api_key=cfg.openai_api_key,
                api_base=cfg.openai_api_base,
                timeout_s=cfg.chat_timeout_s,
            )
        else:
            backend = OllamaChatBackend(
                model_name=cfg.chat_model,
                url=cfg.ollama_url,
                timeout_s=cfg.chat_timeout_s,
            )
        return cls(backend, max_concurrent=cfg.index_concurrency + 1)

    async def prompt(self, messages: Sequence[ChatMessage]) -> str:
        if not messages:
            raise ValueError("At least one message is required.")
        async with self._semaphore:
            return await self._backend.prompt(list(messages))

    async def close(self) -> None:
        close = getattr(self._backend, "close", None)
        if close is not None:
            await close()
