"""Hybrid-search primitives against a remote GPU box.

    GPURELAY_REMOTE_URL=http://gpu-box:8282 python examples/remote_search.py
"""

import asyncio

from gpurelay import get_engine
from gpurelay.types import EmbedOptions, RerankDocument

DOCS = [
    RerankDocument(file="notes/cuda.md", text="CUDA streams let kernels overlap with copies."),
    RerankDocument(file="notes/mps.md", text="Apple's MPS backend runs PyTorch on the M-series GPU."),
    RerankDocument(file="notes/bread.md", text="Sourdough needs a long, cold proof."),
]


async def main():
    engine = get_engine()  # RemoteEngine when GPURELAY_REMOTE_URL is set
    query = "run pytorch on a mac gpu"

    print("Device:", await engine.device_info())

    for q in await engine.expand_query(query):
        print(f"  {q.type:>4}: {q.text}")

    emb = await engine.embed(query, EmbedOptions(is_query=True))
    print(f"query vector: {len(emb.embedding)} dims ({emb.model})")

    ranked = await engine.rerank(query, DOCS)
    for r in ranked.results:
        print(f"  {r.score:.3f}  {r.file}")

    tokens = await engine.tokenize(query)
    print(f"{len(tokens)} tokens → {await engine.detokenize(tokens)!r}")

    await engine.dispose()


asyncio.run(main())
