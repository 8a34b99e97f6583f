"""The inference surface shared by the local engine and the remote proxy.

Calling code depends only on :class:`InferenceEngine`; whether inference
runs in-process (``LocalEngine``) or on a GPU host over HTTP
(``RemoteEngine``) is decided once, by :func:`get_engine`.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Sequence

from gpurelay.auth import get_current_token
from gpurelay.protocol import DEFAULT_TIMEOUT, ENV_REMOTE_URL, ENV_TIMEOUT
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
    RerankOptions,
    RerankResult,
)


class InferenceEngine(ABC):
    """Embedding, generation, reranking and tokenization primitives."""

    @abstractmethod
    async def embed(
        self, text: str, options: EmbedOptions | None = None,
    ) -> EmbeddingResult | None: ...

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[EmbeddingResult | None]: ...

    @abstractmethod
    async def generate(
        self, prompt: str, options: GenerateOptions | None = None,
    ) -> GenerateResult | None: ...

    @abstractmethod
    async def expand_query(
        self, query: str, options: ExpandQueryOptions | None = None,
    ) -> list[Queryable]: ...

    @abstractmethod
    async def rerank(
        self,
        query: str,
        documents: list[RerankDocument],
        options: RerankOptions | None = None,
    ) -> RerankResult: ...

    @abstractmethod
    async def tokenize(self, text: str) -> Sequence[int]: ...

    @abstractmethod
    async def count_tokens(self, text: str) -> int: ...

    @abstractmethod
    async def detokenize(self, tokens: Sequence[int]) -> str: ...

    @abstractmethod
    async def model_exists(self, model: str) -> ModelInfo: ...

    @abstractmethod
    async def device_info(self) -> DeviceInfo: ...

    @abstractmethod
    async def dispose(self) -> None:
        """Release every model and device resource held by the engine."""

    # Inactivity bookkeeping; engines without idle resources ignore it.

    async def unload_idle_resources(self) -> None:
        return None

    def touch_activity(self) -> None:
        return None


def get_engine() -> InferenceEngine:
    """Return a remote proxy if ``GPURELAY_REMOTE_URL`` is set, else a local engine."""
    url = os.environ.get(ENV_REMOTE_URL)
    if url:
        from gpurelay.client.client import RemoteEngine

        timeout = float(os.environ.get(ENV_TIMEOUT, DEFAULT_TIMEOUT))
        return RemoteEngine(url, auth_token=get_current_token(), timeout=timeout)

    from gpurelay.server.inference import LocalEngine

    return LocalEngine.from_env()
