"""Whitelist of engine operations reachable over HTTP.

Each entry maps a POST path to a handler that validates the request
envelope and awaits the matching :class:`InferenceEngine` call. Only
paths in this dict are routed.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from gpurelay.engine import InferenceEngine
from gpurelay.protocol import (
    EP_COUNT_TOKENS,
    EP_DETOKENIZE,
    EP_EMBED,
    EP_EMBED_BATCH,
    EP_EXPAND_QUERY,
    EP_GENERATE,
    EP_MODEL_EXISTS,
    EP_RERANK,
    EP_TOKENIZE,
)
from gpurelay.types import (
    EmbedOptions,
    ExpandQueryOptions,
    GenerateOptions,
    RerankDocument,
    RerankOptions,
)

Handler = Callable[[InferenceEngine, Any], Awaitable[Any]]


# --- Request envelopes -------------------------------------------------------

class EmbedRequest(BaseModel):
    text: str
    options: EmbedOptions | None = None


class EmbedBatchRequest(BaseModel):
    texts: list[str]


class GenerateRequest(BaseModel):
    prompt: str
    options: GenerateOptions | None = None


class ExpandQueryRequest(BaseModel):
    query: str
    options: ExpandQueryOptions | None = None


class RerankRequest(BaseModel):
    query: str
    documents: list[RerankDocument]
    options: RerankOptions | None = None


class TextRequest(BaseModel):
    text: str


class DetokenizeRequest(BaseModel):
    tokens: list[int]


class ModelExistsRequest(BaseModel):
    model: str


# --- Handlers ----------------------------------------------------------------

async def _embed(engine: InferenceEngine, body: Any) -> Any:
    req = EmbedRequest.model_validate(body)
    return await engine.embed(req.text, req.options)


async def _embed_batch(engine: InferenceEngine, body: Any) -> Any:
    req = EmbedBatchRequest.model_validate(body)
    return await engine.embed_batch(req.texts)


async def _generate(engine: InferenceEngine, body: Any) -> Any:
    req = GenerateRequest.model_validate(body)
    return await engine.generate(req.prompt, req.options)


async def _expand_query(engine: InferenceEngine, body: Any) -> Any:
    req = ExpandQueryRequest.model_validate(body)
    return await engine.expand_query(req.query, req.options)


async def _rerank(engine: InferenceEngine, body: Any) -> Any:
    req = RerankRequest.model_validate(body)
    return await engine.rerank(req.query, req.documents, req.options)


async def _tokenize(engine: InferenceEngine, body: Any) -> Any:
    req = TextRequest.model_validate(body)
    tokens = await engine.tokenize(req.text)
    # engine tokens may be numpy / torch scalars
    return {"tokens": [int(t) for t in tokens]}


async def _count_tokens(engine: InferenceEngine, body: Any) -> Any:
    req = TextRequest.model_validate(body)
    return {"count": await engine.count_tokens(req.text)}


async def _detokenize(engine: InferenceEngine, body: Any) -> Any:
    req = DetokenizeRequest.model_validate(body)
    return {"text": await engine.detokenize(req.tokens)}


async def _model_exists(engine: InferenceEngine, body: Any) -> Any:
    req = ModelExistsRequest.model_validate(body)
    return await engine.model_exists(req.model)


OPERATIONS: dict[str, Handler] = {
    EP_EMBED: _embed,
    EP_EMBED_BATCH: _embed_batch,
    EP_GENERATE: _generate,
    EP_EXPAND_QUERY: _expand_query,
    EP_RERANK: _rerank,
    EP_TOKENIZE: _tokenize,
    EP_COUNT_TOKENS: _count_tokens,
    EP_DETOKENIZE: _detokenize,
    EP_MODEL_EXISTS: _model_exists,
}
