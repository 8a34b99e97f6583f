"""LocalEngine: in-process inference on the host's accelerator.

Models are loaded lazily on first use through :class:`ModelRegistry` and
all blocking torch work runs in a worker thread so the event loop serving
HTTP requests is never stalled by a forward pass.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from collections.abc import Sequence
from pathlib import Path

import torch
import torch.nn.functional as F

from gpurelay.engine import InferenceEngine
from gpurelay.protocol import (
    ENV_EMBED_MODEL,
    ENV_GENERATE_MODEL,
    ENV_IDLE_TIMEOUT,
    ENV_RERANK_MODEL,
)
from gpurelay.server.device import device_info
from gpurelay.server.models import ModelRegistry
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
)

log = logging.getLogger(__name__)

DEFAULT_EMBED_MODEL = "BAAI/bge-small-en-v1.5"
DEFAULT_GENERATE_MODEL = "Qwen/Qwen2.5-0.5B-Instruct"
DEFAULT_RERANK_MODEL = "BAAI/bge-reranker-base"
DEFAULT_IDLE_TIMEOUT = 300.0

DEFAULT_MAX_TOKENS = 150
MAX_SEQ_LEN = 512
EMBED_BATCH_SIZE = 32
RERANK_BATCH_SIZE = 16

QUERY_PREFIX = "Represent this sentence for searching relevant passages: "

EXPAND_PROMPT = """\
Rewrite the search query below for a hybrid search engine.
Output one query per line, each prefixed with its kind:
  lex: keyword query for full-text search
  vec: natural-language query for semantic search
  hyde: a short passage that would answer the query
Write two lex lines, two vec lines and one hyde line. Output nothing else.
{context}
Query: {query}
"""

_EXPANSION_LINE = re.compile(r"^\s*(lex|vec|hyde)\s*:\s*(.+?)\s*$", re.IGNORECASE)


def parse_expansion(output: str, query: str, include_lexical: bool = True) -> list[Queryable]:
    """Turn ``kind: text`` lines from the generator into queryables.

    Lines that share no term with *query* are dropped as off-topic. When
    nothing usable survives, the original query is returned as-is.
    """
    terms = [t for t in re.findall(r"\w+", query.lower()) if len(t) > 2] or [query.lower()]
    seen: set[tuple[str, str]] = set()
    out: list[Queryable] = []

    for line in output.splitlines():
        m = _EXPANSION_LINE.match(line)
        if m is None:
            continue
        kind, text = m.group(1).lower(), m.group(2)
        if kind == "lex" and not include_lexical:
            continue
        if not any(t in text.lower() for t in terms):
            continue
        if (kind, text) in seen:
            continue
        seen.add((kind, text))
        out.append(Queryable(type=kind, text=text))

    if out:
        return out

    fallback = [Queryable(type="vec", text=query)]
    if include_lexical:
        fallback.insert(0, Queryable(type="lex", text=query))
    return fallback


class LocalEngine(InferenceEngine):
    """Hugging Face transformers implementation of :class:`InferenceEngine`."""

    def __init__(
        self,
        *,
        embed_model: str = DEFAULT_EMBED_MODEL,
        generate_model: str = DEFAULT_GENERATE_MODEL,
        rerank_model: str = DEFAULT_RERANK_MODEL,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        registry: ModelRegistry | None = None,
    ) -> None:
        self.embed_model = embed_model
        self.generate_model = generate_model
        self.rerank_model = rerank_model
        self.idle_timeout = idle_timeout
        self._registry = registry or ModelRegistry()
        self._last_activity = time.monotonic()

    @classmethod
    def from_env(cls) -> LocalEngine:
        return cls(
            embed_model=os.environ.get(ENV_EMBED_MODEL, DEFAULT_EMBED_MODEL),
            generate_model=os.environ.get(ENV_GENERATE_MODEL, DEFAULT_GENERATE_MODEL),
            rerank_model=os.environ.get(ENV_RERANK_MODEL, DEFAULT_RERANK_MODEL),
            idle_timeout=float(os.environ.get(ENV_IDLE_TIMEOUT, DEFAULT_IDLE_TIMEOUT)),
        )

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    async def embed(
        self, text: str, options: EmbedOptions | None = None,
    ) -> EmbeddingResult | None:
        options = options or EmbedOptions()
        self.touch_activity()
        if not text.strip():
            return None
        name = options.model or self.embed_model
        formatted = _format_for_embedding(text, options)
        vectors = await asyncio.to_thread(self._encode, name, [formatted])
        return EmbeddingResult(embedding=vectors[0], model=name)

    async def embed_batch(self, texts: list[str]) -> list[EmbeddingResult | None]:
        self.touch_activity()
        name = self.embed_model
        # empty strings keep their slot as None
        present = [(i, t) for i, t in enumerate(texts) if t.strip()]
        results: list[EmbeddingResult | None] = [None] * len(texts)
        if not present:
            return results
        vectors = await asyncio.to_thread(self._encode, name, [t for _, t in present])
        for (i, _), vec in zip(present, vectors):
            results[i] = EmbeddingResult(embedding=vec, model=name)
        return results

    def _encode(self, name: str, texts: list[str]) -> list[list[float]]:
        entry = self._registry.load("embedding", name)
        out: list[list[float]] = []
        for start in range(0, len(texts), EMBED_BATCH_SIZE):
            batch = entry.tokenizer(
                texts[start:start + EMBED_BATCH_SIZE],
                padding=True,
                truncation=True,
                max_length=MAX_SEQ_LEN,
                return_tensors="pt",
            ).to(entry.device)
            with torch.no_grad():
                hidden = entry.model(**batch).last_hidden_state
            pooled = F.normalize(hidden[:, 0].float(), p=2, dim=-1)
            out.extend(pooled.cpu().tolist())
        return out

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self, prompt: str, options: GenerateOptions | None = None,
    ) -> GenerateResult | None:
        options = options or GenerateOptions()
        self.touch_activity()
        name = options.model or self.generate_model
        max_tokens = options.max_tokens or DEFAULT_MAX_TOKENS
        temperature = options.temperature if options.temperature is not None else 0.0
        text = await asyncio.to_thread(self._generate, name, prompt, max_tokens, temperature)
        return GenerateResult(text=text, model=name, done=True)

    def _generate(self, name: str, prompt: str, max_tokens: int, temperature: float) -> str:
        entry = self._registry.load("generation", name)
        tokenizer = entry.tokenizer

        if getattr(tokenizer, "chat_template", None):
            prompt = tokenizer.apply_chat_template(
                [{"role": "user", "content": prompt}],
                tokenize=False,
                add_generation_prompt=True,
            )
        inputs = tokenizer(prompt, return_tensors="pt").to(entry.device)

        kwargs: dict = {
            "max_new_tokens": max_tokens,
            "pad_token_id": (
                tokenizer.pad_token_id if tokenizer.pad_token_id is not None
                else tokenizer.eos_token_id
            ),
        }
        if temperature > 0:
            kwargs.update(do_sample=True, temperature=temperature)
        else:
            kwargs["do_sample"] = False

        with torch.no_grad():
            output = entry.model.generate(**inputs, **kwargs)
        new_tokens = output[0, inputs["input_ids"].shape[-1]:]
        return tokenizer.decode(new_tokens, skip_special_tokens=True).strip()

    async def expand_query(
        self, query: str, options: ExpandQueryOptions | None = None,
    ) -> list[Queryable]:
        options = options or ExpandQueryOptions()
        context = f"Context: {options.context}\n" if options.context else ""
        result = await self.generate(
            EXPAND_PROMPT.format(context=context, query=query),
            GenerateOptions(max_tokens=300, temperature=0.7),
        )
        output = result.text if result is not None else ""
        return parse_expansion(output, query, options.include_lexical)

    # ------------------------------------------------------------------
    # Reranking
    # ------------------------------------------------------------------

    async def rerank(
        self,
        query: str,
        documents: list[RerankDocument],
        options: RerankOptions | None = None,
    ) -> RerankResult:
        options = options or RerankOptions()
        self.touch_activity()
        name = options.model or self.rerank_model
        if not documents:
            return RerankResult(results=[], model=name)
        texts = [f"{d.title}\n{d.text}" if d.title else d.text for d in documents]
        scores = await asyncio.to_thread(self._score, name, query, texts)

        results = [
            RerankDocumentResult(file=doc.file, score=score, index=i)
            for i, (doc, score) in enumerate(zip(documents, scores))
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        return RerankResult(results=results, model=name)

    def _score(self, name: str, query: str, texts: list[str]) -> list[float]:
        entry = self._registry.load("reranking", name)
        scores: list[float] = []
        for start in range(0, len(texts), RERANK_BATCH_SIZE):
            chunk = texts[start:start + RERANK_BATCH_SIZE]
            batch = entry.tokenizer(
                [query] * len(chunk),
                chunk,
                padding=True,
                truncation=True,
                max_length=MAX_SEQ_LEN,
                return_tensors="pt",
            ).to(entry.device)
            with torch.no_grad():
                logits = entry.model(**batch).logits.float()
            if logits.shape[-1] == 1:
                probs = torch.sigmoid(logits[:, 0])
            else:
                probs = torch.softmax(logits, dim=-1)[:, -1]
            scores.extend(probs.cpu().tolist())
        return scores

    # ------------------------------------------------------------------
    # Tokenization (generation tokenizer: byte-level, lossless round trip)
    # ------------------------------------------------------------------

    async def tokenize(self, text: str) -> Sequence[int]:
        self.touch_activity()
        tokenizer = await asyncio.to_thread(self._registry.tokenizer, self.generate_model)
        return tokenizer.encode(text, add_special_tokens=False)

    async def count_tokens(self, text: str) -> int:
        return len(await self.tokenize(text))

    async def detokenize(self, tokens: Sequence[int]) -> str:
        self.touch_activity()
        tokenizer = await asyncio.to_thread(self._registry.tokenizer, self.generate_model)
        return tokenizer.decode(list(tokens), clean_up_tokenization_spaces=False)

    # ------------------------------------------------------------------
    # Models / device / lifecycle
    # ------------------------------------------------------------------

    async def model_exists(self, model: str) -> ModelInfo:
        self.touch_activity()
        local = Path(model).expanduser()
        if local.exists():
            return ModelInfo(name=model, exists=True, path=str(local))

        from huggingface_hub import try_to_load_from_cache

        cached = await asyncio.to_thread(try_to_load_from_cache, model, "config.json")
        if isinstance(cached, str):
            return ModelInfo(name=model, exists=True, path=str(Path(cached).parent))
        return ModelInfo(name=model, exists=False)

    async def device_info(self) -> DeviceInfo:
        return await asyncio.to_thread(device_info, self._registry.on_accelerator())

    async def dispose(self) -> None:
        await asyncio.to_thread(self._registry.unload_all)

    async def unload_idle_resources(self) -> None:
        idle = time.monotonic() - self._last_activity
        if idle < self.idle_timeout:
            return
        count = await asyncio.to_thread(self._registry.unload_all)
        if count:
            log.info("idle for %.0fs, released models", idle)

    def touch_activity(self) -> None:
        self._last_activity = time.monotonic()


def _format_for_embedding(text: str, options: EmbedOptions) -> str:
    if options.is_query:
        return QUERY_PREFIX + text
    if options.title:
        return f"{options.title}\n\n{text}"
    return text
