"""RemoteEngine: async HTTP proxy for a gpurelay inference server.

Drop-in replacement for ``LocalEngine`` on machines without a GPU: every
call is one JSON round trip to the server, bounded by a per-call deadline
and never retried.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import Any

import httpx
from pydantic import TypeAdapter

from gpurelay.engine import InferenceEngine
from gpurelay.protocol import (
    DEFAULT_TIMEOUT,
    EP_COUNT_TOKENS,
    EP_DETOKENIZE,
    EP_DEVICE,
    EP_EMBED,
    EP_EMBED_BATCH,
    EP_EXPAND_QUERY,
    EP_GENERATE,
    EP_HEALTH,
    EP_MODEL_EXISTS,
    EP_RERANK,
    EP_TOKENIZE,
)
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

_EMBEDDINGS = TypeAdapter(list[EmbeddingResult | None])
_QUERYABLES = TypeAdapter(list[Queryable])


class RemoteInferenceError(Exception):
    """Base exception for remote engine failures."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message)


class RemoteHTTPError(RemoteInferenceError):
    """The server answered with a non-2xx status."""

    def __init__(self, path: str, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"remote {path} failed ({status_code}): {body}", path=path)


class RemoteTimeoutError(RemoteInferenceError, TimeoutError):
    """No response within the configured deadline."""

    def __init__(self, path: str, timeout: float):
        self.timeout = timeout
        super().__init__(f"remote {path} timed out after {timeout:g}s", path=path)


class RemoteConnectionError(RemoteInferenceError, ConnectionError):
    """Connection refused, DNS or TLS failure, or the connection dropped."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"remote {path} unreachable: {reason}", path=path)


class RemoteEngine(InferenceEngine):
    """Proxies every :class:`InferenceEngine` call to a remote server.

    Args:
        url: Server base URL, e.g. ``http://gpu-box:8282``.
        auth_token: Bearer token; omit when the server runs without auth.
        timeout: Per-call deadline in seconds.
        transport: Optional httpx transport (tests mount the ASGI app here).
    """

    def __init__(
        self,
        url: str,
        auth_token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = url.rstrip("/")
        self._auth_token = auth_token
        self.timeout = timeout
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            headers = {}
            if self._auth_token:
                headers["Authorization"] = f"Bearer {self._auth_token}"
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http

    async def aclose(self) -> None:
        """Close the local connection pool. The server is not affected."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
        self._http = None

    async def __aenter__(self) -> RemoteEngine:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # --- HTTP helper ----------------------------------------------------------

    async def _exchange(self, method: str, path: str, body: Any) -> httpx.Response:
        """Send one request and read its body; non-2xx raises RemoteHTTPError."""
        client = self._client()
        resp = await client.send(client.build_request(method, path, json=body), stream=True)
        try:
            if resp.is_success:
                await resp.aread()
                return resp
            # the error body is informational only; a failed read leaves it empty
            try:
                await resp.aread()
                text = resp.text
            except httpx.HTTPError:
                text = ""
            raise RemoteHTTPError(path, resp.status_code, text)
        finally:
            await resp.aclose()

    async def _request(self, method: str, path: str, body: Any = None) -> Any:
        try:
            resp = await asyncio.wait_for(
                self._exchange(method, path, body),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise RemoteTimeoutError(path, self.timeout) from exc
        except httpx.RequestError as exc:
            raise RemoteConnectionError(path, str(exc) or type(exc).__name__) from exc

        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteInferenceError(f"remote {path} returned invalid JSON", path=path) from exc

    async def _post(self, path: str, body: dict) -> Any:
        return await self._request("POST", path, body)

    async def _get(self, path: str) -> Any:
        return await self._request("GET", path)

    # --- Server info ----------------------------------------------------------

    async def health(self) -> dict:
        return await self._get(EP_HEALTH)

    async def device_info(self) -> DeviceInfo:
        return DeviceInfo.model_validate(await self._get(EP_DEVICE))

    # --- Inference ------------------------------------------------------------

    async def embed(
        self, text: str, options: EmbedOptions | None = None,
    ) -> EmbeddingResult | None:
        data = await self._post(EP_EMBED, {"text": text, "options": _dump(options)})
        return None if data is None else EmbeddingResult.model_validate(data)

    async def embed_batch(self, texts: list[str]) -> list[EmbeddingResult | None]:
        return _EMBEDDINGS.validate_python(await self._post(EP_EMBED_BATCH, {"texts": texts}))

    async def generate(
        self, prompt: str, options: GenerateOptions | None = None,
    ) -> GenerateResult | None:
        data = await self._post(EP_GENERATE, {"prompt": prompt, "options": _dump(options)})
        return None if data is None else GenerateResult.model_validate(data)

    async def expand_query(
        self, query: str, options: ExpandQueryOptions | None = None,
    ) -> list[Queryable]:
        data = await self._post(EP_EXPAND_QUERY, {"query": query, "options": _dump(options)})
        return _QUERYABLES.validate_python(data)

    async def rerank(
        self,
        query: str,
        documents: list[RerankDocument],
        options: RerankOptions | None = None,
    ) -> RerankResult:
        data = await self._post(EP_RERANK, {
            "query": query,
            "documents": [d.model_dump(exclude_none=True) for d in documents],
            "options": _dump(options),
        })
        return RerankResult.model_validate(data)

    async def tokenize(self, text: str) -> Sequence[int]:
        data = await self._post(EP_TOKENIZE, {"text": text})
        return data["tokens"]

    async def count_tokens(self, text: str) -> int:
        data = await self._post(EP_COUNT_TOKENS, {"text": text})
        return data["count"]

    async def detokenize(self, tokens: Sequence[int]) -> str:
        data = await self._post(EP_DETOKENIZE, {"tokens": [int(t) for t in tokens]})
        return data["text"]

    async def model_exists(self, model: str) -> ModelInfo:
        return ModelInfo.model_validate(await self._post(EP_MODEL_EXISTS, {"model": model}))

    # --- Lifecycle: resources live on the server --------------------------------

    async def dispose(self) -> None:
        return None

    async def unload_idle_resources(self) -> None:
        return None

    def touch_activity(self) -> None:
        return None


def _dump(options: Any) -> dict | None:
    return None if options is None else options.model_dump(exclude_none=True)
