"""
Pytest fixtures for gpurelay tests.

FakeEngine is a deterministic, model-free InferenceEngine. Server tests
wrap it in the real FastAPI app; client tests drive RemoteEngine against
that app through httpx.ASGITransport, so no sockets or model downloads
are involved.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import pytest
from fastapi.testclient import TestClient

from gpurelay.engine import InferenceEngine
from gpurelay.protocol import ENV_AUTH_TOKEN, ENV_REMOTE_URL
from gpurelay.server.app import create_app
from gpurelay.types import (
    DeviceInfo,
    EmbeddingResult,
    EmbedOptions,
    ExpandQueryOptions,
    GenerateOptions,
    GenerateResult,
    ModelInfo,
    Queryable,
    RerankDocument,
    RerankDocumentResult,
    RerankOptions,
    RerankResult,
    VramInfo,
)

TOKEN = "s3cret-token"


class FakeEngine(InferenceEngine):
    """Records calls; fails operations named in *fail_on*; sleeps *delay* seconds first."""

    def __init__(self, fail_on: Sequence[str] = (), delay: float = 0.0) -> None:
        self.fail_on = set(fail_on)
        self.delay = delay
        self.calls: list[tuple[str, tuple]] = []
        self.dispose_calls = 0
        self.idle_sweeps = 0

    async def _enter(self, op: str, *args) -> None:
        self.calls.append((op, args))
        if self.delay:
            await asyncio.sleep(self.delay)
        if op in self.fail_on:
            raise RuntimeError(f"{op} model exploded")

    async def embed(self, text: str, options: EmbedOptions | None = None) -> EmbeddingResult | None:
        await self._enter("embed", text, options)
        if not text:
            return None
        scale = 2.0 if options is not None and options.is_query else 1.0
        return EmbeddingResult(embedding=[len(text) * scale, float(ord(text[0]))], model="fake-embed")

    async def embed_batch(self, texts: list[str]) -> list[EmbeddingResult | None]:
        await self._enter("embed_batch", texts)
        return [
            EmbeddingResult(embedding=[float(len(t))], model="fake-embed") if t else None
            for t in texts
        ]

    async def generate(self, prompt: str, options: GenerateOptions | None = None) -> GenerateResult | None:
        await self._enter("generate", prompt, options)
        max_tokens = options.max_tokens if options and options.max_tokens else 64
        return GenerateResult(text=prompt[::-1][:max_tokens], model="fake-gen")

    async def expand_query(self, query: str, options: ExpandQueryOptions | None = None) -> list[Queryable]:
        await self._enter("expand_query", query, options)
        out = [Queryable(type="vec", text=f"what is {query}"), Queryable(type="hyde", text=f"{query} is a thing")]
        if options is None or options.include_lexical:
            out.insert(0, Queryable(type="lex", text=query))
        return out

    async def rerank(
        self,
        query: str,
        documents: list[RerankDocument],
        options: RerankOptions | None = None,
    ) -> RerankResult:
        await self._enter("rerank", query, documents, options)
        results = [
            RerankDocumentResult(file=d.file, score=float(d.text.count(query)), index=i)
            for i, d in enumerate(documents)
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        return RerankResult(results=results, model=(options and options.model) or "fake-rerank")

    async def tokenize(self, text: str) -> Sequence[int]:
        await self._enter("tokenize", text)
        # a tuple stands in for an engine-specific token container
        return tuple(text.encode("utf-8"))

    async def count_tokens(self, text: str) -> int:
        await self._enter("count_tokens", text)
        return len(text.encode("utf-8"))

    async def detokenize(self, tokens: Sequence[int]) -> str:
        await self._enter("detokenize", tokens)
        return bytes(tokens).decode("utf-8")

    async def model_exists(self, model: str) -> ModelInfo:
        await self._enter("model_exists", model)
        if model.startswith("known/"):
            return ModelInfo(name=model, exists=True, path=f"/models/{model}")
        return ModelInfo(name=model, exists=False)

    async def device_info(self) -> DeviceInfo:
        await self._enter("device_info")
        return DeviceInfo(
            gpu="cuda",
            gpu_offloading=True,
            gpu_devices=["Fake GPU 24GB"],
            vram=VramInfo(total=24, used=4, free=20),
            cpu_cores=8,
        )

    async def dispose(self) -> None:
        self.dispose_calls += 1

    async def unload_idle_resources(self) -> None:
        self.idle_sweeps += 1


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's real token / remote URL out of the tests."""
    monkeypatch.delenv(ENV_AUTH_TOKEN, raising=False)
    monkeypatch.delenv(ENV_REMOTE_URL, raising=False)


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def client(engine: FakeEngine) -> TestClient:
    """Server with auth disabled and no warm-up."""
    return TestClient(create_app(engine, warmup=False))


@pytest.fixture
def auth_client(engine: FakeEngine) -> TestClient:
    """Server requiring TOKEN."""
    return TestClient(create_app(engine, auth_token=TOKEN, warmup=False))
