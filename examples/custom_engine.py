"""Serve a customised engine through the gpurelay HTTP server.

Anything implementing gpurelay.engine.InferenceEngine can be put behind
the HTTP server; this one keeps the local models but fakes generation.
"""

import uvicorn

from gpurelay.auth import get_current_token
from gpurelay.server.app import create_app
from gpurelay.server.inference import LocalEngine
from gpurelay.types import GenerateOptions, GenerateResult


class CannedGenerator(LocalEngine):
    """Real embeddings and reranking, canned generation."""

    async def generate(self, prompt: str, options: GenerateOptions | None = None) -> GenerateResult:
        return GenerateResult(text=f"(canned reply to {prompt!r})", model="canned")


app = create_app(CannedGenerator(), auth_token=get_current_token(), warmup=False)

uvicorn.run(app, host="127.0.0.1", port=8282, log_level="info")
